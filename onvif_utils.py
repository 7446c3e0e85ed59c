import asyncio
import datetime
import logging
import re
import socket
import time
from typing import Any, Dict, Iterable, List, Optional

from onvif import ONVIFCamera
from onvif.exceptions import ONVIFError
from requests import Session
from requests.auth import HTTPDigestAuth
from zeep.exceptions import Fault, TransportError
from zeep.transports import Transport

from errors import AuthenticationError, ProfileGUnsupported
from models import CameraCapabilities, RecordingDescriptor, Tristate
from net_utils import accept_self_signed
from param import (
    ONVIF_CALL_TIMEOUT,
    ONVIF_MAX_MATCHES,
    ONVIF_PRIORITY_METHODS,
    ONVIF_SEARCH_ROUNDS,
)
from recording_urls import append_time_params


STATUS_RE = re.compile(r"(?:HTTP\s*)?(?P<code>[1-5]\d{2})")
REDIRECT_RE = re.compile(r"location[:=]\s*(?P<url>\S+)", re.IGNORECASE)
LOCK_RE = re.compile(r"(?:after|in|for)\s+(\d+)\s*(second|minute|hour)", re.IGNORECASE)
LOCK_KEYWORDS = (
    "devicelocked",
    "locked",
    "accountlocked",
    "passwordlocked",
    "too many attempts",
    "too many failures",
    "toomanyfailedauthenticationattempts",
)
LOCK_STATUSES = (423, 429)
UNAUTHORIZED_MARKERS = (
    "notauthorized",
    "unauthorized",
    "failedauthentication",
    "could not be authenticated",
    "sender not authorized",
)
NOT_SUPPORTED_MARKERS = (
    "novalidoperation",
    "actionnotsupported",
    "notsupported",
    "not supported",
    "doesn't support service",
    "unknown operation",
)

STREAM_SETUP = {"Stream": "RTP-Unicast", "Transport": {"Protocol": "RTSP"}}


def _method_key(service: str, method: str) -> str:
    return f"{service}.{method}"


def _status_group(status: Optional[int]) -> Optional[int]:
    if status is None:
        return None
    try:
        return int(status) // 100
    except (TypeError, ValueError):
        return None


def _extract_status_code(exc: Any) -> Optional[int]:
    if isinstance(exc, int):
        return exc
    status = getattr(exc, "status_code", None)
    if status:
        try:
            return int(status)
        except (TypeError, ValueError):
            pass
    message = str(exc) if exc is not None else ""
    match = STATUS_RE.search(message)
    if match:
        try:
            return int(match.group("code"))
        except (TypeError, ValueError):
            return None
    return None


def _extract_redirect(exc: Any) -> Optional[str]:
    message = str(exc) if exc is not None else ""
    match = REDIRECT_RE.search(message)
    if match:
        return match.group("url").strip("'\"")
    content = getattr(exc, "content", None)
    if isinstance(content, (bytes, bytearray)):
        content = content.decode("utf-8", errors="ignore")
    if isinstance(content, str) and content:
        match = REDIRECT_RE.search(content)
        if match:
            return match.group("url").strip("'\"")
    return None


def parse_lock_time(message: str) -> Optional[int]:
    match = LOCK_RE.search(message or "")
    if not match:
        return None
    value = int(match.group(1))
    unit = match.group(2).lower()
    factors = {"second": 1, "minute": 60, "hour": 3600}
    return value * factors.get(unit, 1)


def _classify_category(status: Optional[int], message: str, *, exc: Any = None) -> Optional[str]:
    text = (message or "").lower()
    fault_code = str(getattr(exc, "code", "") or "").lower()
    if exc is not None and isinstance(exc, (socket.timeout, TimeoutError)):
        return "timeout"
    if "timed out" in text or "timeout" in text:
        return "timeout"
    if status in LOCK_STATUSES or any(keyword in text or keyword in fault_code for keyword in LOCK_KEYWORDS):
        return "locked"
    if status in (401, 403) or any(marker in text or marker in fault_code for marker in UNAUTHORIZED_MARKERS):
        return "unauthorized"
    if status in (400, 404, 405, 501) or any(
        marker in text or marker in fault_code for marker in NOT_SUPPORTED_MARKERS
    ):
        return "not_supported"
    if status is not None and 300 <= status < 400:
        return "redirect"
    return "error"


def _build_error_result(
    exc: Any,
    *,
    status: Optional[int] = None,
    redirect: Optional[str] = None,
    latency_ms: Optional[float] = None,
) -> Dict[str, Any]:
    message = str(exc) if exc is not None else ""
    code = _extract_status_code(status if status is not None else exc)
    category = _classify_category(code, message, exc=exc)
    result: Dict[str, Any] = {
        "success": False,
        "status": code,
        "status_group": _status_group(code),
        "category": category,
        "error": message or None,
        "result": None,
        "latency_ms": latency_ms,
        "exception": type(exc).__name__ if exc else None,
    }
    if redirect:
        result["redirect"] = redirect
    if isinstance(exc, Fault):
        result["fault_code"] = getattr(exc, "code", None)
        result["fault_string"] = getattr(exc, "message", None)
    if category == "locked":
        result["lock_seconds"] = parse_lock_time(message) or 31 * 60
    return result


def _build_params(params: Any, service: Any) -> Any:
    if params is None:
        return None
    if callable(params):
        try:
            return params(service)
        except TypeError:
            return params()
    return params


def _update_service_address(service: Any, new_address: str) -> bool:
    try:
        binding = getattr(service.ws_client, "_binding", None)
        if binding is None:
            return False
        binding_name = getattr(binding, "name", None)
        if binding_name is None:
            return False
        service.ws_client = service.zeep_client.create_service(binding_name, new_address)
        service.xaddr = new_address
        return True
    except Exception:
        logging.debug("Failed to update service address to %s", new_address, exc_info=True)
        return False


def safe_call(
    service: Any,
    method_name: str,
    params: Any = None,
    *,
    allow_redirect: bool = True,
) -> Dict[str, Any]:
    method = getattr(service, method_name)
    prepared = _build_params(params, service)
    start = time.perf_counter()
    try:
        if prepared is None:
            response = method()
        else:
            response = method(prepared)
        latency = round((time.perf_counter() - start) * 1000, 2)
        return {
            "success": True,
            "status": 200,
            "status_group": 2,
            "result": response,
            "category": None,
            "error": None,
            "latency_ms": latency,
        }
    except TransportError as err:
        redirect = _extract_redirect(err)
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, redirect=redirect, latency_ms=latency)
    except Fault as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, latency_ms=latency)
    except ONVIFError as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, latency_ms=latency)
    except Exception as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, latency_ms=latency)

    redirect_url = result.get("redirect")
    if (
        allow_redirect
        and redirect_url
        and result.get("category") == "redirect"
        and _update_service_address(service, redirect_url)
    ):
        logging.debug("Following redirect for %s to %s", method_name, redirect_url)
        follow = safe_call(service, method_name, params=params, allow_redirect=False)
        follow["redirect"] = redirect_url
        return follow
    return result


def create_service(camera: Any, service_name: str, cache: Dict[str, Any]) -> Dict[str, Any]:
    """Create (once) an ONVIF service, as a result dict shaped like safe_call's."""
    if service_name in cache:
        return cache[service_name]
    creator = getattr(camera, f"create_{service_name}_service", None)
    if not callable(creator):
        entry = {
            "success": False,
            "status": None,
            "category": "not_supported",
            "error": f"Service {service_name} unavailable",
            "result": None,
        }
    else:
        try:
            entry = {"success": True, "result": creator(), "category": None}
        except (Fault, ONVIFError) as err:
            entry = _build_error_result(err)
        except Exception as err:
            entry = _build_error_result(err)
    cache[service_name] = entry
    return entry


def _execute_method_sequence(camera: Any, methods: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    service_cache: Dict[str, Any] = {}
    results: Dict[str, Dict[str, Any]] = {}
    for call in methods:
        key = _method_key(call["service"], call["method"])
        service = create_service(camera, call["service"], service_cache)
        if not service["success"]:
            results[key] = dict(service)
            continue
        results[key] = safe_call(service["result"], call["method"], params=call.get("params"))
    return results


def raise_for_auth(result: Dict[str, Any], what: str) -> None:
    category = result.get("category")
    if category in ("unauthorized", "locked"):
        raise AuthenticationError(
            f"{what}: credentials rejected ({result.get('error')})",
            protocol="onvif",
            status=result.get("status"),
            lock_seconds=result.get("lock_seconds"),
        )


def connect_camera(endpoint) -> Any:
    session = Session()
    if endpoint.username:
        # Some firmwares want HTTP digest on top of WS-Security
        session.auth = HTTPDigestAuth(endpoint.username, endpoint.password or "")
    accept = endpoint.accept_self_signed_tls
    session.verify = not (accept_self_signed() if accept is None else accept)
    transport = Transport(session=session, timeout=ONVIF_CALL_TIMEOUT, operation_timeout=ONVIF_CALL_TIMEOUT)
    return ONVIFCamera(
        endpoint.host,
        endpoint.port,
        endpoint.username or "",
        endpoint.password or "",
        transport=transport,
    )


def open_camera(endpoint, what: str) -> Optional[Any]:
    try:
        return connect_camera(endpoint)
    except (Fault, ONVIFError, TransportError) as err:
        result = _build_error_result(err)
    except Exception as err:
        result = _build_error_result(err)
    raise_for_auth(result, what)
    logging.info(
        "ONVIF unavailable on %s:%s (%s)",
        endpoint.host,
        endpoint.port,
        result.get("category"),
    )
    return None


def _attr(obj: Any, *path: str) -> Any:
    for name in path:
        if obj is None:
            return None
        obj = getattr(obj, name, None)
    return obj


def _device_info(result: Dict[str, Any]) -> Dict[str, Any]:
    if not result.get("success"):
        return {}
    info = result["result"]
    fields = ("Manufacturer", "Model", "FirmwareVersion", "SerialNumber", "HardwareId")
    return {name: _attr(info, name) for name in fields if _attr(info, name) is not None}


def capabilities_from_results(results: Dict[str, Dict[str, Any]]) -> Optional[CameraCapabilities]:
    """Summarise GetDeviceInformation/GetCapabilities/GetProfiles results.

    Returns None when the device never answered GetCapabilities.
    """
    caps_call = results.get("devicemgmt.GetCapabilities") or {}
    if not caps_call.get("success"):
        return None
    caps = caps_call["result"]
    profiles_call = results.get("media.GetProfiles") or {}
    profiles = list(profiles_call.get("result") or []) if profiles_call.get("success") else []

    has_recording = bool(_attr(caps, "Extension", "Recording", "XAddr"))
    has_search = bool(_attr(caps, "Extension", "Search", "XAddr"))
    has_replay = bool(_attr(caps, "Extension", "Replay", "XAddr"))
    audio_sources = _attr(caps, "Extension", "DeviceIO", "AudioSources") or 0

    return CameraCapabilities(
        has_ptz=bool(_attr(caps, "PTZ", "XAddr")) or any(_attr(p, "PTZConfiguration") for p in profiles),
        has_audio=bool(audio_sources) or any(_attr(p, "AudioEncoderConfiguration") for p in profiles),
        has_motion_detection=bool(_attr(caps, "Analytics", "XAddr"))
        or any(_attr(p, "VideoAnalyticsConfiguration") for p in profiles),
        has_recording=has_recording,
        has_recording_search=has_search,
        has_recording_download=has_replay,
        supports_onvif_profile_g=Tristate.TRUE if has_recording and has_search else Tristate.FALSE,
        available_profiles=[_attr(p, "Name") or _attr(p, "token") for p in profiles],
        device_info=_device_info(results.get("devicemgmt.GetDeviceInformation") or {}),
    )


def negotiate_capabilities_sync(endpoint) -> Optional[CameraCapabilities]:
    camera = open_camera(endpoint, "ONVIF connect")
    if camera is None:
        return None
    results = _execute_method_sequence(camera, ONVIF_PRIORITY_METHODS)
    for call in ONVIF_PRIORITY_METHODS:
        if call.get("critical"):
            raise_for_auth(results[_method_key(call["service"], call["method"])], call["method"])
    capabilities = capabilities_from_results(results)
    if capabilities is None:
        logging.info("GetCapabilities failed on %s:%s", endpoint.host, endpoint.port)
    return capabilities


def _recording_descriptor(info: Any, replay: Any) -> RecordingDescriptor:
    token = _attr(info, "RecordingToken")
    start = _attr(info, "EarliestRecording")
    end = _attr(info, "LatestRecording")
    tracks = _attr(info, "Track") or []
    track_types = [str(_attr(track, "TrackType")) for track in tracks if _attr(track, "TrackType")]
    metadata: Dict[str, Any] = {
        "source": "onvif",
        "recordingToken": token,
        "sourceId": _attr(info, "Source", "SourceId"),
        "sourceName": _attr(info, "Source", "Name"),
        "content": _attr(info, "Content"),
        "recordingStatus": _attr(info, "RecordingStatus"),
        "trackTypes": track_types,
    }
    if replay is not None and token:
        reply = safe_call(replay, "GetReplayUri", {"StreamSetup": STREAM_SETUP, "RecordingToken": token})
        if reply["success"] and reply["result"]:
            uri = append_time_params(str(reply["result"]), start, end)
            metadata["playbackUrl"] = uri
            metadata["rtspUrl"] = uri
        else:
            logging.debug("GetReplayUri failed for %s: %s", token, reply.get("error"))
    return RecordingDescriptor(
        id=str(token),
        filename=None,
        start_time=start,
        end_time=end,
        recording_type=_attr(info, "Content") or (track_types[0] if track_types else None),
        metadata={key: value for key, value in metadata.items() if value not in (None, [])},
    )


def _check_search_result(result: Dict[str, Any], method: str) -> None:
    raise_for_auth(result, method)
    if result.get("exception") == "Fault" or result.get("category") == "not_supported":
        raise ProfileGUnsupported(f"{method} not implemented", fault=result.get("error"))


def search_recordings_sync(
    endpoint,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    recording_type: Optional[str] = None,
) -> Optional[List[RecordingDescriptor]]:
    """ONVIF Profile G search in device order.

    Returns None when the device could not be reached (a transient state) and
    raises ProfileGUnsupported when it answered without a working search.
    """
    camera = open_camera(endpoint, "ONVIF connect")
    if camera is None:
        return None
    services: Dict[str, Any] = {}
    search_service = create_service(camera, "search", services)
    if not search_service["success"]:
        raise_for_auth(search_service, "Search service")
        raise ProfileGUnsupported("Search service not advertised", fault=search_service.get("error"))
    search = search_service["result"]

    find = safe_call(
        search,
        "FindRecordings",
        {
            "Scope": {},
            "MaxMatches": ONVIF_MAX_MATCHES,
            "KeepAliveTime": datetime.timedelta(seconds=30),
        },
    )
    if not find["success"]:
        _check_search_result(find, "FindRecordings")
        return None
    token = find["result"]

    infos: List[Any] = []
    for _ in range(ONVIF_SEARCH_ROUNDS):
        page = safe_call(
            search,
            "GetRecordingSearchResults",
            {
                "SearchToken": token,
                "MaxResults": ONVIF_MAX_MATCHES,
                "WaitTime": datetime.timedelta(seconds=5),
            },
        )
        if not page["success"]:
            _check_search_result(page, "GetRecordingSearchResults")
            return None
        infos.extend(_attr(page["result"], "RecordingInformation") or [])
        if _attr(page["result"], "SearchState") == "Completed":
            break
    else:
        logging.warning("ONVIF search on %s did not complete; using partial results", endpoint.host)
    safe_call(search, "EndSearch", {"SearchToken": token})

    replay_service = create_service(camera, "replay", services)
    replay = replay_service["result"] if replay_service["success"] else None
    recordings = [_recording_descriptor(info, replay) for info in infos]
    return [r for r in recordings if r.overlaps(start, end) and r.matches_type(recording_type)]


def get_stream_uri_sync(endpoint) -> Optional[str]:
    camera = open_camera(endpoint, "ONVIF connect")
    if camera is None:
        return None
    services: Dict[str, Any] = {}
    media_service = create_service(camera, "media", services)
    if not media_service["success"]:
        return None
    media = media_service["result"]
    profiles = safe_call(media, "GetProfiles")
    raise_for_auth(profiles, "GetProfiles")
    if not profiles["success"] or not profiles["result"]:
        return None
    request = {"StreamSetup": STREAM_SETUP, "ProfileToken": profiles["result"][0].token}
    uri = safe_call(media, "GetStreamUri", request)
    if not uri["success"]:
        logging.error("ONVIF GetStreamUri failed: %s", uri.get("error"))
        return None
    return _attr(uri["result"], "Uri")


async def run_onvif(func, *args, timeout: float = ONVIF_CALL_TIMEOUT * 4):
    """Run a blocking onvif-zeep routine in a worker thread with a deadline."""
    return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)


async def negotiate_capabilities(endpoint) -> Optional[CameraCapabilities]:
    try:
        return await run_onvif(negotiate_capabilities_sync, endpoint)
    except asyncio.TimeoutError:
        logging.info("ONVIF negotiation timed out on %s:%s", endpoint.host, endpoint.port)
        return None


async def search_recordings(endpoint, start=None, end=None, recording_type=None) -> Optional[List[RecordingDescriptor]]:
    try:
        return await run_onvif(search_recordings_sync, endpoint, start, end, recording_type)
    except asyncio.TimeoutError:
        logging.info("ONVIF search timed out on %s:%s", endpoint.host, endpoint.port)
        return None


async def get_stream_uri(endpoint) -> Optional[str]:
    try:
        return await run_onvif(get_stream_uri_sync, endpoint)
    except asyncio.TimeoutError:
        return None
