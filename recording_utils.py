"""Recording URL resolution, download and non-ONVIF recording search.

Every fallback chain is an ordered list of strategy objects.  ``resolve``
runs them one at a time against a shared context and stops at the first
one that produces a value.  A failing strategy never raises out of the
loop; the overall outcome only says whether something worked, whether
credentials were rejected along the way, and which categories were tried.
"""

import asyncio
import datetime
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from urllib.parse import unquote, urljoin, urlparse

import aiohttp

from errors import AuthenticationError, FtpAuthError, MalformedInputError, ProfileGUnsupported
from ftp_utils import ftp_download, ftp_list
from models import Outcome, OutcomeCode, RecordingDescriptor, Tristate
from net_utils import (
    ProbeResult,
    basic_auth,
    fetch_text,
    is_port_open,
    mask_credentials,
    parse_url,
    probe_http,
    probe_rtsp_port,
    ssl_option,
    strip_userinfo,
)
from onvif_utils import search_recordings as onvif_search_recordings
from param import (
    DEFAULT_RTSP_PORT,
    FTP_CONNECT_TIMEOUT,
    FTP_LISTING_DIRS,
    HTTP_DOWNLOAD_TIMEOUT,
    HTTP_LISTING_PATHS,
    RECORDING_FILENAME_PATTERNS,
    VIDEO_EXTENSIONS,
)
from recording_urls import (
    build_url,
    download_metadata_candidates,
    ftp_candidates,
    http_bases,
    http_candidates,
    playback_metadata_candidates,
    rtsp_fallback_candidates,
    scheme_of,
    with_credentials,
)


CHUNK_SIZE = 64 * 1024
HREF_RE = re.compile(r"""href\s*=\s*["']([^"'#?]+)["']""", re.IGNORECASE)
FILENAME_PATTERNS = [(re.compile(pattern), fmt) for pattern, fmt in RECORDING_FILENAME_PATTERNS]


@dataclass
class ResolutionContext:
    camera: Any
    recording: Optional[RecordingDescriptor] = None
    http_port: Optional[int] = None
    save_path: Optional[str] = None
    onvif_endpoint: Any = None
    cache: Any = None
    start: Optional[datetime.datetime] = None
    end: Optional[datetime.datetime] = None
    recording_type: Optional[str] = None
    attempted: List[str] = field(default_factory=list)
    auth_failures: List[str] = field(default_factory=list)
    tried: Set[str] = field(default_factory=set)
    ports: Dict[Any, bool] = field(default_factory=dict)
    protocol_mismatch: bool = False

    @property
    def credentials(self):
        return self.camera.credentials

    def first_try(self, url: str) -> bool:
        """Record a URL; False when this resolution already tried it."""
        key = strip_userinfo(url)[0]
        if key in self.tried:
            return False
        self.tried.add(key)
        return True

    def auth_failed(self, category: str, url: Optional[str] = None) -> None:
        logging.info("Credentials rejected by %s (%s)", category, mask_credentials(url) or "-")
        if category not in self.auth_failures:
            self.auth_failures.append(category)


class Strategy:
    category = "base"

    def applicable(self, context: ResolutionContext) -> bool:
        return True

    async def attempt(self, context: ResolutionContext) -> Any:
        raise NotImplementedError


async def resolve(strategies: List[Strategy], context: ResolutionContext, operation: str) -> Outcome:
    for strategy in strategies:
        if not strategy.applicable(context):
            continue
        context.attempted.append(strategy.category)
        try:
            value = await strategy.attempt(context)
        except Exception:
            logging.debug("%s strategy %s failed", operation, strategy.category, exc_info=True)
            continue
        if value is not None:
            logging.info("%s resolved by %s strategy", operation, strategy.category)
            return Outcome(
                OutcomeCode.SUCCESS,
                operation,
                camera_id=context.camera.camera_id,
                value=value,
                attempted=list(context.attempted),
            )
    if context.auth_failures:
        code = OutcomeCode.AUTH_FAILED
        reason = "Credentials rejected by " + ", ".join(context.auth_failures)
    else:
        code = OutcomeCode.EXHAUSTED
        reason = "All strategies failed: " + ", ".join(context.attempted or ["none"])
    logging.info("%s failed for %s: %s", operation, context.camera.camera_id, reason)
    return Outcome(
        code,
        operation,
        camera_id=context.camera.camera_id,
        reason=reason,
        attempted=list(context.attempted),
    )


async def _rtsp_reachable(context: ResolutionContext, url: str) -> bool:
    parsed = urlparse(url)
    target = (parsed.hostname, parsed.port or DEFAULT_RTSP_PORT)
    if target not in context.ports:
        context.ports[target] = await probe_rtsp_port(*target)
    return context.ports[target]


async def _probe_candidate(context: ResolutionContext, url: str, category: str) -> bool:
    """Validate a playback URL by scheme; unknown or broken URLs are skipped."""
    try:
        if not context.first_try(url):
            return False
        scheme = parse_url(url).scheme.lower()
        if scheme in ("http", "https"):
            probe = await probe_http(
                url,
                context.credentials,
                accept_self_signed_tls=context.camera.endpoint.accept_self_signed_tls,
            )
            if probe.unauthorized:
                context.auth_failed(category, url)
            return bool(probe)
        if scheme == "rtsp":
            return await _rtsp_reachable(context, url)
    except (MalformedInputError, ValueError) as err:
        logging.debug("Skipping malformed candidate: %s", err)
        return False
    logging.debug("Skipping unsupported scheme %s", scheme)
    return False


class MetadataPlaybackStrategy(Strategy):
    category = "metadata"

    async def attempt(self, context):
        for url in playback_metadata_candidates(context.recording):
            if await _probe_candidate(context, url, self.category):
                return with_credentials(url, context.credentials)
        return None


class HttpPlaybackStrategy(Strategy):
    category = "http"

    async def attempt(self, context):
        candidates = http_candidates(
            context.camera,
            context.recording,
            context.http_port,
            include_stream_paths=True,
        )
        for url in candidates:
            if await _probe_candidate(context, url, self.category):
                return url
        return None


class RtspFallbackStrategy(Strategy):
    """Live stream URL as the last resort for playback; never for downloads."""

    category = "rtsp"

    async def attempt(self, context):
        for url in rtsp_fallback_candidates(context.camera):
            if await _probe_candidate(context, url, self.category):
                return url
        return None


async def http_download(
    url: str,
    save_path: str,
    credentials: Any = None,
    timeout: float = HTTP_DOWNLOAD_TIMEOUT,
    accept_self_signed_tls: Optional[bool] = None,
) -> ProbeResult:
    """GET a recording into ``save_path``; only a non-empty 200 counts."""
    parse_url(url, ("http", "https"))
    clean_url, auth = basic_auth(url, credentials)
    part_path = f"{save_path}.part"
    status = None
    complete = False
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(clean_url, auth=auth, ssl=ssl_option(accept_self_signed_tls)) as resp:
                status = resp.status
                if status != 200:
                    return ProbeResult(False, status)
                os.makedirs(os.path.dirname(os.path.abspath(save_path)), exist_ok=True)
                written = 0
                with open(part_path, "wb") as fh:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
        if not written:
            logging.debug("Empty 200 from %s", mask_credentials(url))
            return ProbeResult(False, status, "empty body")
        os.replace(part_path, save_path)
        complete = True
        logging.info("Downloaded %s bytes from %s", written, mask_credentials(url))
        return ProbeResult(True, status)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as err:
        logging.debug("HTTP download of %s failed: %s", mask_credentials(url), err)
        return ProbeResult(False, status, str(err) or type(err).__name__)
    finally:
        if not complete:
            try:
                os.remove(part_path)
            except OSError:
                pass


async def _download_candidate(context: ResolutionContext, url: str, category: str) -> bool:
    scheme = scheme_of(url)
    try:
        if not context.first_try(url):
            return False
        if scheme in ("http", "https"):
            result = await http_download(
                url,
                context.save_path,
                context.credentials,
                accept_self_signed_tls=context.camera.endpoint.accept_self_signed_tls,
            )
            if result.unauthorized:
                context.auth_failed(category, url)
            return bool(result)
        if scheme == "ftp":
            return await ftp_download(url, context.save_path, context.credentials)
    except (MalformedInputError, ValueError) as err:
        logging.debug("Skipping malformed download URL: %s", err)
        return False
    logging.debug("Skipping unsupported download scheme %r", scheme)
    return False


class MetadataDownloadStrategy(Strategy):
    category = "metadata"

    async def attempt(self, context):
        for url in download_metadata_candidates(context.recording):
            try:
                if await _download_candidate(context, url, self.category):
                    return context.save_path
            except FtpAuthError:
                context.auth_failed(self.category, url)
        return None


class HttpDownloadStrategy(Strategy):
    category = "http"

    async def attempt(self, context):
        for url in http_candidates(context.camera, context.recording, context.http_port):
            if await _download_candidate(context, url, self.category):
                return context.save_path
        return None


class FtpDownloadStrategy(Strategy):
    category = "ftp"

    async def attempt(self, context):
        for url in ftp_candidates(context.camera, context.recording):
            try:
                if await _download_candidate(context, url, self.category):
                    return context.save_path
            except FtpAuthError:
                # The same login would be rejected for every other path
                context.auth_failed(self.category, url)
                return None
        return None


def parse_filename_time(name: str) -> Optional[datetime.datetime]:
    for pattern, fmt in FILENAME_PATTERNS:
        match = pattern.search(name)
        if not match:
            continue
        value = match.group(1)
        try:
            if fmt == "epoch":
                seconds = int(value)
                if seconds > 10 ** 11:
                    seconds //= 1000
                return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)
            return datetime.datetime.strptime(value, fmt)
        except (ValueError, OverflowError, OSError):
            continue
    return None


def is_video_name(name: str) -> bool:
    return name.rsplit(".", 1)[-1].lower() in VIDEO_EXTENSIONS if "." in name else False


def recording_from_file(name: str, url: str, source: str) -> RecordingDescriptor:
    return RecordingDescriptor(
        id=url,
        filename=name,
        start_time=parse_filename_time(name),
        recording_type="file",
        metadata={"source": source, "downloadUrl": url},
    )


def _filter(recordings: List[RecordingDescriptor], context: ResolutionContext) -> List[RecordingDescriptor]:
    return [
        r
        for r in recordings
        if r.overlaps(context.start, context.end) and r.matches_type(context.recording_type)
    ]


class OnvifSearchStrategy(Strategy):
    """Profile G search; skipped once the device is known not to support it."""

    category = "onvif"

    def applicable(self, context):
        if context.onvif_endpoint is None:
            return False
        return context.cache is None or context.cache.profile_g(context.camera.camera_id) is not Tristate.FALSE

    async def attempt(self, context):
        camera_id = context.camera.camera_id
        try:
            recordings = await onvif_search_recordings(
                context.onvif_endpoint,
                context.start,
                context.end,
                context.recording_type,
            )
        except ProfileGUnsupported as err:
            logging.info("Profile G unavailable on %s: %s", camera_id, err.fault or err)
            context.protocol_mismatch = True
            if context.cache is not None:
                context.cache.mark_profile_g(camera_id, Tristate.FALSE)
            return None
        except AuthenticationError:
            context.auth_failed(self.category)
            return None
        if recordings is not None and context.cache is not None:
            if context.cache.profile_g(camera_id) is Tristate.UNKNOWN:
                context.cache.mark_profile_g(camera_id, Tristate.TRUE)
        return recordings


class HttpListingStrategy(Strategy):
    category = "http_listing"

    async def attempt(self, context):
        for base in http_bases(context.camera, context.http_port):
            for path in HTTP_LISTING_PATHS:
                url = base + path
                status, body = await fetch_text(
                    with_credentials(url, context.credentials),
                    accept_self_signed_tls=context.camera.endpoint.accept_self_signed_tls,
                )
                if status in (401, 403):
                    context.auth_failed(self.category, url)
                    return None
                if not body:
                    continue
                recordings = []
                seen = set()
                for href in HREF_RE.findall(body):
                    name = unquote(href.rstrip("/").rsplit("/", 1)[-1])
                    file_url = urljoin(url, href)
                    if not is_video_name(name) or file_url in seen:
                        continue
                    seen.add(file_url)
                    recordings.append(recording_from_file(name, file_url, "http_listing"))
                if recordings:
                    return _filter(recordings, context)
        return None


class FtpListingStrategy(Strategy):
    category = "ftp_listing"

    async def attempt(self, context):
        host = context.camera.host
        if not await is_port_open(host, 21, FTP_CONNECT_TIMEOUT):
            return None
        for directory in FTP_LISTING_DIRS:
            url = build_url("ftp", host, None, directory)
            try:
                names = await ftp_list(url, context.credentials)
            except FtpAuthError:
                context.auth_failed(self.category, url)
                return None
            videos = [name for name in names or [] if is_video_name(name)]
            if videos:
                prefix = url.rstrip("/")
                return _filter(
                    [recording_from_file(name, f"{prefix}/{name}", "ftp_listing") for name in videos],
                    context,
                )
        return None


def playback_strategies() -> List[Strategy]:
    return [MetadataPlaybackStrategy(), HttpPlaybackStrategy(), RtspFallbackStrategy()]


def download_strategies() -> List[Strategy]:
    return [MetadataDownloadStrategy(), HttpDownloadStrategy(), FtpDownloadStrategy()]


def search_strategies() -> List[Strategy]:
    return [OnvifSearchStrategy(), HttpListingStrategy(), FtpListingStrategy()]
