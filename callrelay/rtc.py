"""aiortc-backed collaborators for the call state machine."""
import asyncio
import logging
import platform
from typing import Any, Dict, List, Optional

from aiortc import (
    AudioStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    VideoStreamTrack,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .errors import MediaPermissionDenied, NegotiationRejected
from .machine import MediaCapture, PeerTransport

logger = logging.getLogger(__name__)


def _description_dict(description):
    return {"type": description.type, "sdp": description.sdp}


def candidate_to_dict(candidate) -> Dict[str, Any]:
    """RTCIceCandidate -> the RTCIceCandidateInit shape browsers send."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]):
    line = data.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class AiortcTransport(PeerTransport):
    """PeerTransport over an aiortc RTCPeerConnection.

    aiortc gathers all local candidates before setLocalDescription returns and
    embeds them in the description, so ``on_candidate`` is never called; remote
    trickled candidates are still accepted.
    """

    def __init__(self, ice_servers: Optional[List[str]] = None):
        servers = [RTCIceServer(urls=url) for url in (ice_servers or [])]
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=servers))

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug("Connection state: %s", self.pc.connectionState)
            if self.on_state_change is not None:
                await self.on_state_change(self.pc.connectionState)

        @self.pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            # aiortc's connectionState has no "disconnected", ICE does
            logger.debug("ICE connection state: %s", self.pc.iceConnectionState)
            if self.pc.iceConnectionState == "disconnected" and self.on_state_change is not None:
                await self.on_state_change("disconnected")

        @self.pc.on("track")
        async def on_track(track):
            logger.info("Received %s track", track.kind)
            if self.on_track is not None:
                await self.on_track(track)

    def add_tracks(self, tracks):
        for track in tracks:
            self.pc.addTrack(track)

    async def create_offer(self):
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return _description_dict(self.pc.localDescription)

    async def create_answer(self):
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        return _description_dict(self.pc.localDescription)

    async def set_remote_description(self, description):
        try:
            remote = RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            await self.pc.setRemoteDescription(remote)
        except (KeyError, TypeError, ValueError) as exc:
            raise NegotiationRejected(f"unusable remote description: {exc}") from exc

    async def add_candidate(self, candidate):
        if isinstance(candidate, dict):
            candidate = candidate_from_dict(candidate)
        await self.pc.addIceCandidate(candidate)

    async def close(self):
        await self.pc.close()


class DeviceCapture(MediaCapture):
    """Camera and microphone through ffmpeg devices (aiortc MediaPlayer)."""

    def __init__(self, video_device=None, audio_device=None, media_format=None, options=None):
        system = platform.system()
        if media_format is None:
            media_format = {"Linux": "v4l2", "Darwin": "avfoundation", "Windows": "dshow"}.get(system)
        if video_device is None:
            video_device = {"Linux": "/dev/video0", "Darwin": "default:default"}.get(system)
        self.video_device = video_device
        self.audio_device = audio_device
        self.media_format = media_format
        self.options = options or {"framerate": "30", "video_size": "640x480"}
        self._players = {}

    def _open(self):
        players = []
        if self.video_device:
            players.append(MediaPlayer(self.video_device, format=self.media_format, options=self.options))
        if self.audio_device:
            audio_format = "pulse" if self.media_format == "v4l2" else self.media_format
            players.append(MediaPlayer(self.audio_device, format=audio_format))
        return players

    async def acquire(self):
        loop = asyncio.get_running_loop()
        try:
            # opening a device blocks on the driver (and on the OS permission prompt)
            players = await loop.run_in_executor(None, self._open)
        except OSError as exc:
            raise MediaPermissionDenied(f"media capture refused: {exc}") from exc
        tracks = []
        for player in players:
            for track in (player.audio, player.video):
                if track is not None:
                    tracks.append(track)
                    self._players[id(track)] = player
        if not tracks:
            raise MediaPermissionDenied("no capture device available")
        return tracks

    def release(self, tracks):
        for track in tracks:
            track.stop()
            self._players.pop(id(track), None)


class SyntheticCapture(MediaCapture):
    """Generated test tone/pattern tracks for headless peers."""

    def __init__(self, audio=True, video=True):
        self.audio = audio
        self.video = video

    async def acquire(self):
        tracks = []
        if self.audio:
            tracks.append(AudioStreamTrack())
        if self.video:
            tracks.append(VideoStreamTrack())
        return tracks

    def release(self, tracks):
        for track in tracks:
            track.stop()
