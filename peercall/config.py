import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv


# Load .env once at import time (support running from any cwd)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # STUN/TURN
    STUN_SERVER: str | None = os.getenv("STUN_SERVER")
    TURN_URL: str | None = os.getenv("TURN_URL")
    TURN_USERNAME: str | None = os.getenv("TURN_USERNAME")
    TURN_PASSWORD: str | None = os.getenv("TURN_PASSWORD")

    # Relay behaviour
    NOTIFY_PEER_LEFT: bool = _env_flag("NOTIFY_PEER_LEFT", "true")

    # Client side
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")
    MEDIA_VIDEO_DEVICE: str | None = os.getenv("MEDIA_VIDEO_DEVICE")
    MEDIA_AUDIO_DEVICE: str | None = os.getenv("MEDIA_AUDIO_DEVICE")
    MEDIA_VIDEO_FORMAT: str | None = os.getenv("MEDIA_VIDEO_FORMAT")
    MEDIA_AUDIO_FORMAT: str | None = os.getenv("MEDIA_AUDIO_FORMAT")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

# Convenient module-level alias
settings = get_settings()


def ice_servers(cfg: Settings | None = None) -> list[dict]:
    """ICE server list shared by the /config endpoint and the aiortc client."""
    cfg = cfg or settings
    servers = []
    if cfg.STUN_SERVER:
        servers.append({"urls": cfg.STUN_SERVER})
    # Always include Google public STUN as fallback
    servers.extend([
        {"urls": "stun:stun.l.google.com:19302"},
        {"urls": "stun:stun1.l.google.com:19302"},
    ])

    if cfg.TURN_URL and cfg.TURN_USERNAME and cfg.TURN_PASSWORD:
        servers.append({
            "urls": cfg.TURN_URL,
            "username": cfg.TURN_USERNAME,
            "credential": cfg.TURN_PASSWORD,
        })
    return servers
