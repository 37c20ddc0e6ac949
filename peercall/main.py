import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from peercall.routers import signaling
from peercall.config import ice_servers, settings

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

app = FastAPI(title="PeerCall Signaling Relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(signaling.router)

@app.get("/config")
async def rtc_config():
    """Expose ICE server config to clients.

    Environment variables (optional):
    - STUN_SERVER: e.g. stun:stun.example.com:3478
    - TURN_URL: e.g. turn:turn.example.com:3478
    - TURN_USERNAME
    - TURN_PASSWORD
    """
    return {"iceServers": ice_servers()}

@app.get("/health")
async def health_check():
    return {"status": "healthy", "message": "Signaling relay is running"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
