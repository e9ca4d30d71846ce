"""
ELR Receiver Entry Point

Run with: uvicorn elr_receiver.main:create_app --factory --port 8888
Or: python main.py
"""

import uvicorn

from elr_receiver.config import Settings

if __name__ == "__main__":
    settings = Settings.from_environment()
    uvicorn.run("elr_receiver.main:create_app", factory=True, host="0.0.0.0", port=settings.port)
