"""Signaling and data channel message definitions (JSON wire formats)."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import json


SIGNAL_TYPES = ("ready", "offer", "answer", "ice", "fallback_http", "p2p_done", "error")


@dataclass
class SignalMessage:
    """
    One message on the signaling channel.

    Tagged by ``type``; the payload depends on the tag:
    ``offer``/``answer`` carry ``sdp`` ({type, sdp}), ``ice`` carries
    ``candidate`` ({candidate, sdpMid, sdpMLineIndex}), ``fallback_http``
    an optional ``reason`` and ``error`` a ``message``.
    """
    type: str
    sdp: Optional[Dict[str, str]] = None
    candidate: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ready(cls) -> 'SignalMessage':
        return cls(type="ready")

    @classmethod
    def offer(cls, sdp: str) -> 'SignalMessage':
        return cls(type="offer", sdp={"type": "offer", "sdp": sdp})

    @classmethod
    def answer(cls, sdp: str) -> 'SignalMessage':
        return cls(type="answer", sdp={"type": "answer", "sdp": sdp})

    @classmethod
    def ice(cls, candidate: Dict[str, Any]) -> 'SignalMessage':
        return cls(type="ice", candidate=candidate)

    @classmethod
    def fallback(cls, reason: Optional[str] = None) -> 'SignalMessage':
        return cls(type="fallback_http", reason=reason)

    @classmethod
    def done(cls) -> 'SignalMessage':
        return cls(type="p2p_done")

    @classmethod
    def error(cls, message: str) -> 'SignalMessage':
        return cls(type="error", message=message)

    def to_dict(self) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"type": self.type}
        if self.sdp is not None:
            obj["sdp"] = self.sdp
        if self.candidate is not None:
            obj["candidate"] = self.candidate
        if self.reason is not None:
            obj["reason"] = self.reason
        if self.message is not None:
            obj["message"] = self.message
        return obj

    def to_json(self) -> str:
        """Serialize to a JSON text frame."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, obj: Any) -> Optional['SignalMessage']:
        if not isinstance(obj, dict) or obj.get("type") not in SIGNAL_TYPES:
            return None
        return cls(
            type=obj["type"],
            sdp=obj.get("sdp"),
            candidate=obj.get("candidate"),
            reason=obj.get("reason"),
            message=obj.get("message"),
        )

    @classmethod
    def from_json(cls, data: str) -> Optional['SignalMessage']:
        """Deserialize a text frame; unparseable frames yield None."""
        try:
            obj = json.loads(data)
        except (TypeError, ValueError):
            return None
        return cls.from_dict(obj)


@dataclass
class FileMeta:
    """First record on the data channel, announcing the file."""
    name: str
    size: int
    chunk_size: int

    def to_json(self) -> str:
        return json.dumps({
            "type": "file_meta",
            "name": self.name,
            "size": self.size,
            "chunkSize": self.chunk_size,
        })


FILE_END = json.dumps({"type": "file_end"})


@dataclass
class ChannelControl:
    """A parsed text record received on the data channel."""
    type: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: str) -> Optional['ChannelControl']:
        try:
            obj = json.loads(data)
        except (TypeError, ValueError):
            return None
        if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
            return None
        return cls(type=obj["type"], fields=obj)

    def as_meta(self, fallback_name: str = "", fallback_size: int = 0) -> FileMeta:
        return FileMeta(
            name=self.fields.get("name") or fallback_name,
            size=int(self.fields.get("size") or fallback_size),
            chunk_size=int(self.fields.get("chunkSize") or 0),
        )
