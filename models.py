import datetime
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from errors import MalformedInputError
from net_utils import validate_address, validate_port


class Tristate(str, Enum):
    TRUE = "true"
    FALSE = "false"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value: Any) -> "Tristate":
        if isinstance(value, Tristate):
            return value
        if value is True:
            return cls.TRUE
        if value is False:
            return cls.FALSE
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class OutcomeCode(str, Enum):
    SUCCESS = "success"
    AUTH_FAILED = "auth_failed"
    MALFORMED_INPUT = "malformed_input"
    EXHAUSTED = "exhausted"
    CAPABILITY_ERROR = "capability_error"


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> Optional[datetime.datetime]:
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        return value
    try:
        return datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Credentials:
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.username) and bool(self.password)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Credentials"]:
        if not data:
            return None
        return cls(username=data.get("username"), password=data.get("password"))


@dataclass(frozen=True)
class CameraEndpoint:
    host: str
    port: int = 80
    credentials: Optional[Credentials] = None
    transport: str = "tcp"
    accept_self_signed_tls: Optional[bool] = None

    def validate(self) -> "CameraEndpoint":
        validate_address(self.host)
        validate_port(self.port)
        if self.transport not in ("tcp", "udp"):
            raise MalformedInputError(f"Unsupported transport: {self.transport}")
        return self

    @property
    def username(self) -> Optional[str]:
        return self.credentials.username if self.credentials else None

    @property
    def password(self) -> Optional[str]:
        return self.credentials.password if self.credentials else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "credentials": asdict(self.credentials) if self.credentials else None,
            "transport": self.transport,
            "accept_self_signed_tls": self.accept_self_signed_tls,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraEndpoint":
        return cls(
            host=data["host"],
            port=int(data.get("port") or 80),
            credentials=Credentials.from_dict(data.get("credentials")),
            transport=data.get("transport") or "tcp",
            accept_self_signed_tls=data.get("accept_self_signed_tls"),
        )


@dataclass
class Camera:
    endpoint: CameraEndpoint
    stream_url: Optional[str] = None
    camera_id: Optional[str] = None
    name: Optional[str] = None
    manufacturer: Optional[str] = None

    def __post_init__(self):
        if not self.camera_id:
            self.camera_id = f"{self.endpoint.host}:{self.endpoint.port}"

    @property
    def host(self) -> str:
        if self.stream_url:
            parsed = urlparse(self.stream_url)
            if parsed.hostname:
                return parsed.hostname
        return self.endpoint.host

    @property
    def credentials(self) -> Optional[Credentials]:
        return self.endpoint.credentials

    def to_dict(self) -> Dict[str, Any]:
        return {
            "camera_id": self.camera_id,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "stream_url": self.stream_url,
            "endpoint": self.endpoint.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Camera":
        return cls(
            endpoint=CameraEndpoint.from_dict(data["endpoint"]),
            stream_url=data.get("stream_url"),
            camera_id=data.get("camera_id"),
            name=data.get("name"),
            manufacturer=data.get("manufacturer"),
        )


@dataclass
class ProtocolDetectionResult:
    onvif_available: bool = False
    proprietary_available: bool = False
    rtsp_available: bool = False
    http_available: bool = False
    onvif_port: Optional[int] = None
    proprietary_port: Optional[int] = None
    rtsp_port: Optional[int] = None
    http_port: Optional[int] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    detected_at: Optional[datetime.datetime] = None

    @property
    def has_any_protocol(self) -> bool:
        return self.onvif_available or self.proprietary_available or self.rtsp_available

    @property
    def detected_ports(self) -> Dict[str, Optional[int]]:
        return {
            "onvif": self.onvif_port,
            "proprietary": self.proprietary_port,
            "rtsp": self.rtsp_port,
            "http": self.http_port,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["detected_at"] = _iso(self.detected_at)
        data["has_any_protocol"] = self.has_any_protocol
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolDetectionResult":
        return cls(
            onvif_available=bool(data.get("onvif_available")),
            proprietary_available=bool(data.get("proprietary_available")),
            rtsp_available=bool(data.get("rtsp_available")),
            http_available=bool(data.get("http_available")),
            onvif_port=data.get("onvif_port"),
            proprietary_port=data.get("proprietary_port"),
            rtsp_port=data.get("rtsp_port"),
            http_port=data.get("http_port"),
            device_info=dict(data.get("device_info") or {}),
            error=data.get("error"),
            detected_at=_parse_iso(data.get("detected_at")),
        )


@dataclass
class OnvifDeviceMatch:
    """One ONVIF device that answered a WS-Discovery search."""

    address: str
    xaddrs: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)
    endpoint_reference: Optional[str] = None
    detection: Optional[ProtocolDetectionResult] = None

    def _service_url(self):
        for xaddr in self.xaddrs:
            try:
                parsed = urlparse(xaddr)
                port = parsed.port
            except ValueError:
                continue
            if parsed.hostname:
                return parsed.hostname, port or (443 if parsed.scheme == "https" else 80)
        return None

    @property
    def host(self) -> str:
        service = self._service_url()
        return service[0] if service else self.address

    @property
    def port(self) -> Optional[int]:
        service = self._service_url()
        return service[1] if service else None

    def scope(self, name: str) -> Optional[str]:
        """Value of an ``onvif://www.onvif.org/<name>/<value>`` scope."""
        prefix = f"onvif://www.onvif.org/{name}/"
        for scope in self.scopes:
            if scope.startswith(prefix):
                return unquote(scope[len(prefix):])
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "host": self.host,
            "port": self.port,
            "xaddrs": list(self.xaddrs),
            "scopes": list(self.scopes),
            "types": list(self.types),
            "endpoint_reference": self.endpoint_reference,
            "name": self.scope("name"),
            "hardware": self.scope("hardware"),
            "detection": self.detection.to_dict() if self.detection else None,
        }


@dataclass
class CameraCapabilities:
    has_ptz: bool = False
    has_audio: bool = False
    has_motion_detection: bool = False
    has_recording: bool = False
    has_recording_search: bool = False
    has_recording_download: bool = False
    supports_onvif_profile_g: Tristate = Tristate.UNKNOWN
    available_profiles: List[str] = field(default_factory=list)
    device_info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["supports_onvif_profile_g"] = self.supports_onvif_profile_g.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraCapabilities":
        return cls(
            has_ptz=bool(data.get("has_ptz")),
            has_audio=bool(data.get("has_audio")),
            has_motion_detection=bool(data.get("has_motion_detection")),
            has_recording=bool(data.get("has_recording")),
            has_recording_search=bool(data.get("has_recording_search")),
            has_recording_download=bool(data.get("has_recording_download")),
            supports_onvif_profile_g=Tristate.from_value(data.get("supports_onvif_profile_g")),
            available_profiles=list(data.get("available_profiles") or []),
            device_info=dict(data.get("device_info") or {}),
        )


@dataclass(frozen=True)
class RecordingDescriptor:
    id: str
    filename: Optional[str] = None
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    duration: Optional[float] = None
    size_bytes: Optional[int] = None
    recording_type: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Callers keep their own bag; ours is never mutated after this point
        object.__setattr__(self, "metadata", dict(self.metadata or {}))
        if self.duration is None and self.start_time and self.end_time:
            seconds = (self.end_time - self.start_time).total_seconds()
            object.__setattr__(self, "duration", max(seconds, 0.0))

    def overlaps(
        self,
        start: Optional[datetime.datetime],
        end: Optional[datetime.datetime],
    ) -> bool:
        """True when the recording intersects [start, end]; open bounds match.

        A recording without an end time is treated as a point at its start.
        """
        last = self.end_time or self.start_time
        if start and last and _comparable(last, start) < start:
            return False
        if end and self.start_time and _comparable(self.start_time, end) > end:
            return False
        return True

    def matches_type(self, recording_type: Optional[str]) -> bool:
        if not recording_type:
            return True
        wanted = recording_type.lower()
        kinds = [self.recording_type or ""] + list(self.metadata.get("trackTypes") or [])
        return any(wanted == str(kind).lower() for kind in kinds)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_time"] = _iso(self.start_time)
        data["end_time"] = _iso(self.end_time)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordingDescriptor":
        return cls(
            id=str(data["id"]),
            filename=data.get("filename"),
            start_time=_parse_iso(data.get("start_time")),
            end_time=_parse_iso(data.get("end_time")),
            duration=data.get("duration"),
            size_bytes=data.get("size_bytes"),
            recording_type=data.get("recording_type"),
            thumbnail_url=data.get("thumbnail_url"),
            metadata=dict(data.get("metadata") or {}),
        )


def _comparable(value: datetime.datetime, other: datetime.datetime) -> datetime.datetime:
    """Align tz-awareness of value with other; naive values are taken as UTC."""
    if value.tzinfo is None and other.tzinfo is not None:
        return value.replace(tzinfo=datetime.timezone.utc)
    if value.tzinfo is not None and other.tzinfo is None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class Outcome:
    code: OutcomeCode
    operation: str
    camera_id: Optional[str] = None
    value: Any = None
    reason: Optional[str] = None
    attempted: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.code is OutcomeCode.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif isinstance(value, list):
            value = [item.to_dict() if hasattr(item, "to_dict") else item for item in value]
        return {
            "code": self.code.value,
            "operation": self.operation,
            "camera_id": self.camera_id,
            "value": value,
            "reason": self.reason,
            "attempted": list(self.attempted),
        }
