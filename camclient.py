"""Public entry point: one object exposing the camera operations.

Operations on the same camera id are serialized with a per-camera lock so
the resolver never opens parallel connections to one device.  Every
completed top-level call produces an :class:`Outcome` that is handed to the
optional ``notify`` callback.
"""

import asyncio
import datetime
import logging
import os
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import discovery
import onvif_utils
import ptz_utils
from capability_cache import CapabilityCache
from errors import (
    AuthenticationError,
    CapabilityError,
    ExhaustedStrategiesError,
    MalformedInputError,
)
from models import (
    Camera,
    CameraCapabilities,
    CameraEndpoint,
    OnvifDeviceMatch,
    Outcome,
    OutcomeCode,
    ProtocolDetectionResult,
    RecordingDescriptor,
    Tristate,
)
from net_utils import mask_credentials, parse_url, probe_rtsp_port
from param import DEFAULT_RTSP_PORT
from recording_urls import rtsp_fallback_candidates
from recording_utils import (
    ResolutionContext,
    download_strategies,
    playback_strategies,
    resolve,
    search_strategies,
)


SAFE_FILE_CHARS = "-_."


def _validate_camera(camera: Any) -> Camera:
    if not isinstance(camera, Camera):
        raise MalformedInputError(f"Expected a Camera, got {type(camera).__name__}")
    camera.endpoint.validate()
    if camera.stream_url:
        parse_url(camera.stream_url, ("rtsp", "rtsps", "http", "https"))
    return camera


def _validate_recording(recording: Any) -> RecordingDescriptor:
    if not isinstance(recording, RecordingDescriptor):
        raise MalformedInputError(f"Expected a RecordingDescriptor, got {type(recording).__name__}")
    return recording


def _default_filename(recording: RecordingDescriptor) -> str:
    if recording.filename:
        return os.path.basename(recording.filename)
    safe = "".join(ch if ch.isalnum() or ch in SAFE_FILE_CHARS else "_" for ch in recording.id)
    return f"{safe or 'recording'}.mp4"


class CameraClient:
    def __init__(
        self,
        cache: Optional[CapabilityCache] = None,
        notify: Optional[Callable[[Outcome], None]] = None,
    ):
        self.cache = cache if cache is not None else CapabilityCache()
        self.notify = notify
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, camera_id: str) -> asyncio.Lock:
        lock = self._locks.get(camera_id)
        if lock is None:
            lock = self._locks[camera_id] = asyncio.Lock()
        return lock

    def _emit(self, outcome: Outcome) -> None:
        if self.notify is None:
            return
        try:
            self.notify(outcome)
        except Exception:
            logging.error("Outcome callback failed for %s", outcome.operation, exc_info=True)

    async def _call(self, operation: str, camera_id: str, func, *args) -> Outcome:
        """Run one operation under the camera lock and report its outcome.

        Typed failures are reported and then re-raised to the caller.
        """
        try:
            async with self._lock(camera_id):
                result = await func(*args)
        except MalformedInputError as err:
            self._emit(Outcome(OutcomeCode.MALFORMED_INPUT, operation, camera_id, reason=str(err)))
            raise
        except AuthenticationError as err:
            self._emit(Outcome(OutcomeCode.AUTH_FAILED, operation, camera_id, reason=str(err)))
            raise
        except CapabilityError as err:
            self._emit(Outcome(OutcomeCode.CAPABILITY_ERROR, operation, camera_id, reason=str(err)))
            raise
        except ExhaustedStrategiesError as err:
            self._emit(
                Outcome(OutcomeCode.EXHAUSTED, operation, camera_id, reason=str(err), attempted=err.attempted)
            )
            raise
        outcome = result if isinstance(result, Outcome) else Outcome(
            OutcomeCode.SUCCESS, operation, camera_id, value=result
        )
        self._emit(outcome)
        return outcome

    def _onvif_endpoint(
        self,
        camera: Camera,
        detection: Optional[ProtocolDetectionResult],
    ) -> Optional[CameraEndpoint]:
        if detection is None:
            return camera.endpoint
        if not detection.onvif_available:
            return None
        if detection.onvif_port and detection.onvif_port != camera.endpoint.port:
            return replace(camera.endpoint, port=detection.onvif_port)
        return camera.endpoint

    def _context(
        self,
        camera: Camera,
        detection: Optional[ProtocolDetectionResult],
        **kwargs,
    ) -> ResolutionContext:
        return ResolutionContext(
            camera=camera,
            http_port=detection.http_port if detection else None,
            cache=self.cache,
            **kwargs,
        )

    async def _detection(self, camera: Camera) -> Optional[ProtocolDetectionResult]:
        """Cached detection for a camera, discovering it on first use.

        A device on which nothing answered is not cached so that a camera
        that was briefly offline is detected again on the next call.
        """
        detection = self.cache.get_detection(camera.camera_id)
        if detection is not None:
            return detection
        logging.info("No detection cached for %s; discovering", camera.camera_id)
        detection = await discovery.discover_device(
            camera.endpoint.host,
            credentials=camera.credentials,
            manufacturer=camera.manufacturer,
        )
        if not detection.has_any_protocol:
            logging.info("Nothing answered on %s: %s", camera.camera_id, detection.error)
            return None
        self.cache.set_detection(camera.camera_id, detection)
        return detection

    async def _negotiate(self, endpoint: CameraEndpoint, key: str) -> CameraCapabilities:
        endpoint.validate()
        capabilities = await onvif_utils.negotiate_capabilities(endpoint)
        cached = self.cache.get_capabilities(key)
        if capabilities is None:
            if cached is not None:
                logging.info("Capability negotiation failed for %s; keeping cached value", key)
                return cached
            return CameraCapabilities()
        if cached is not None and cached.supports_onvif_profile_g is Tristate.FALSE:
            capabilities.supports_onvif_profile_g = Tristate.FALSE
        self.cache.set_capabilities(key, capabilities)
        return capabilities

    # Discovery

    async def discover_device(
        self,
        host: str,
        *,
        credentials: Any = None,
        manufacturer: Optional[str] = None,
        camera_id: Optional[str] = None,
        force: bool = False,
        timeout: Optional[float] = None,
        onvif_port: Optional[int] = None,
    ) -> ProtocolDetectionResult:
        """Classify the protocols spoken by ``host``.

        Results are cached under ``camera_id`` (the host by default) until
        :meth:`redetect` or ``force=True``.
        """
        key = camera_id or host

        async def run():
            if not force:
                cached = self.cache.get_detection(key)
                if cached is not None:
                    logging.debug("Using cached detection for %s", key)
                    return cached
            result = await discovery.discover_device(
                host,
                credentials=credentials,
                manufacturer=manufacturer,
                timeout=timeout,
                onvif_port=onvif_port,
            )
            self.cache.set_detection(key, result)
            return result

        outcome = await self._call("discover_device", key, run)
        return outcome.value

    async def discover_many(self, hosts: Iterable[str], **kwargs) -> List[Any]:
        """Discover several hosts concurrently; failures are returned in place."""
        return await asyncio.gather(
            *(self.discover_device(host, **kwargs) for host in hosts),
            return_exceptions=True,
        )

    async def discover_onvif_devices(
        self,
        *,
        credentials: Any = None,
        timeout: Optional[float] = None,
        target: Optional[Tuple[str, int]] = None,
        detect: bool = True,
    ) -> List[OnvifDeviceMatch]:
        """WS-Discovery search, then protocol detection of every device found.

        Detections are cached under ``host:port`` of the advertised device
        service, the same key a :class:`Camera` built from the match uses.
        """
        matches = await discovery.ws_discover(timeout, target=target)
        if not detect or not matches:
            return matches
        results = await asyncio.gather(
            *(
                self.discover_device(
                    match.host,
                    credentials=credentials,
                    camera_id=f"{match.host}:{match.port or 80}",
                    onvif_port=match.port,
                )
                for match in matches
            ),
            return_exceptions=True,
        )
        for match, result in zip(matches, results):
            if isinstance(result, ProtocolDetectionResult):
                match.detection = result
            else:
                logging.warning("Detection of %s failed: %s", match.host, result)
        return matches

    async def scan_network(self, network: str, ports=None, **kwargs) -> List[Dict[str, Any]]:
        return await discovery.scan_network(network, ports, **kwargs)

    # Capabilities

    async def negotiate_capabilities(
        self,
        endpoint: CameraEndpoint,
        camera_id: Optional[str] = None,
    ) -> CameraCapabilities:
        """Query ONVIF capabilities and store them in the cache.

        When the device cannot be reached the cached value (or an empty
        capability set) is returned unchanged.  A Profile G verdict learned
        from a failed search survives renegotiation until :meth:`redetect`.
        """
        key = camera_id or f"{endpoint.host}:{endpoint.port}"

        async def run():
            return await self._negotiate(endpoint, key)

        outcome = await self._call("negotiate_capabilities", key, run)
        return outcome.value

    # Recordings

    async def search_recordings(
        self,
        camera: Camera,
        start: Optional[datetime.datetime] = None,
        end: Optional[datetime.datetime] = None,
        recording_type: Optional[str] = None,
    ) -> List[RecordingDescriptor]:
        """Recordings in device order.

        An empty list means the device answered and has nothing matching.
        """

        async def run():
            _validate_camera(camera)
            if start and end and start > end:
                raise MalformedInputError("Search start is after its end")
            detection = await self._detection(camera)
            context = self._context(
                camera,
                detection,
                onvif_endpoint=self._onvif_endpoint(camera, detection),
                start=start,
                end=end,
                recording_type=recording_type,
            )
            outcome = await resolve(search_strategies(), context, "search_recordings")
            if outcome.ok:
                return outcome
            if outcome.code is OutcomeCode.AUTH_FAILED:
                raise AuthenticationError(outcome.reason, protocol=",".join(context.auth_failures))
            profile_g = self.cache.profile_g(camera.camera_id)
            if context.protocol_mismatch or profile_g is Tristate.FALSE:
                # The device answered; it just keeps no searchable recordings
                return Outcome(
                    OutcomeCode.SUCCESS,
                    "search_recordings",
                    camera.camera_id,
                    value=[],
                    attempted=outcome.attempted,
                )
            raise ExhaustedStrategiesError(outcome.reason, outcome.attempted)

        outcome = await self._call("search_recordings", camera.camera_id, run)
        return outcome.value

    async def resolve_playback(self, camera: Camera, recording: RecordingDescriptor) -> Outcome:
        async def run():
            _validate_camera(camera)
            _validate_recording(recording)
            context = self._context(camera, await self._detection(camera), recording=recording)
            return await resolve(playback_strategies(), context, "get_playback_url")

        return await self._call("get_playback_url", camera.camera_id, run)

    async def get_playback_url(self, camera: Camera, recording: RecordingDescriptor) -> Optional[str]:
        outcome = await self.resolve_playback(camera, recording)
        return outcome.value if outcome.ok else None

    async def resolve_download(
        self,
        camera: Camera,
        recording: RecordingDescriptor,
        destination: str,
    ) -> Outcome:
        async def run():
            _validate_camera(camera)
            _validate_recording(recording)
            if not destination or not isinstance(destination, str):
                raise MalformedInputError("A destination path is required")
            save_path = destination
            if os.path.isdir(destination):
                save_path = os.path.join(destination, _default_filename(recording))
            detection = await self._detection(camera)
            context = self._context(camera, detection, recording=recording, save_path=save_path)
            return await resolve(download_strategies(), context, "download_recording")

        return await self._call("download_recording", camera.camera_id, run)

    async def download_recording(self, camera: Camera, recording: RecordingDescriptor, destination: str) -> bool:
        outcome = await self.resolve_download(camera, recording, destination)
        return outcome.ok

    # Control

    async def send_ptz_command(self, camera: Camera, command: Any, override_credentials: Any = None) -> bool:
        async def run():
            _validate_camera(camera)
            if isinstance(command, dict):
                ptz_command = ptz_utils.PtzCommand.from_dict(command)
            else:
                ptz_command = ptz_utils.validate_command(command)
            endpoint = camera.endpoint
            if override_credentials is not None:
                endpoint = replace(endpoint, credentials=override_credentials)
            detection = await self._detection(camera)
            capabilities = self.cache.get_capabilities(camera.camera_id)
            onvif_endpoint = self._onvif_endpoint(replace(camera, endpoint=endpoint), detection)
            if capabilities is None and onvif_endpoint is not None:
                capabilities = await self._negotiate(onvif_endpoint, camera.camera_id)
            sent = await ptz_utils.send_ptz_command(
                endpoint,
                ptz_command,
                capabilities=capabilities,
                detection=detection,
                override=override_credentials is not None,
            )
            if not sent:
                return Outcome(
                    OutcomeCode.EXHAUSTED,
                    "send_ptz_command",
                    camera.camera_id,
                    value=False,
                    reason=f"PTZ {ptz_command.action.value} was not acknowledged",
                )
            return True

        outcome = await self._call("send_ptz_command", camera.camera_id, run)
        return outcome.ok

    async def get_live_stream_url(self, camera: Camera) -> Optional[str]:
        """Live stream for the external player: ONVIF GetStreamUri, then RTSP."""

        async def run():
            _validate_camera(camera)
            endpoint = self._onvif_endpoint(camera, await self._detection(camera))
            if endpoint is not None:
                try:
                    uri = await onvif_utils.get_stream_uri(endpoint)
                except AuthenticationError:
                    logging.info("ONVIF rejected credentials for %s; trying RTSP", camera.camera_id)
                    uri = None
                if uri:
                    return uri
            for url in rtsp_fallback_candidates(camera):
                parsed = parse_url(url)
                if await probe_rtsp_port(parsed.hostname, parsed.port or DEFAULT_RTSP_PORT):
                    logging.info("Live stream for %s: %s", camera.camera_id, mask_credentials(url))
                    return url
            return Outcome(
                OutcomeCode.EXHAUSTED,
                "get_live_stream_url",
                camera.camera_id,
                reason="No live stream answered",
                attempted=["onvif", "rtsp"],
            )

        outcome = await self._call("get_live_stream_url", camera.camera_id, run)
        return outcome.value if outcome.ok else None

    def redetect(self, camera_id: str) -> None:
        """Forget everything cached for a camera."""
        self.cache.invalidate(camera_id)
