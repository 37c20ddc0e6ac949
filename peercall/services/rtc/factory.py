from .base import MediaProvider, PeerConnectionFactory
from peercall.config import ice_servers, settings


def get_media_provider() -> MediaProvider:
    from .aiortc_provider import AiortcMediaProvider
    return AiortcMediaProvider(
        video_device=settings.MEDIA_VIDEO_DEVICE,
        audio_device=settings.MEDIA_AUDIO_DEVICE,
        video_format=settings.MEDIA_VIDEO_FORMAT,
        audio_format=settings.MEDIA_AUDIO_FORMAT,
    )


def get_peer_connection_factory() -> PeerConnectionFactory:
    from .aiortc_provider import AiortcPeerConnection
    servers = ice_servers()
    return lambda: AiortcPeerConnection(ice_servers=servers)
