import datetime
import re
from typing import Any, Iterable, List, Optional
from urllib.parse import quote, urlencode, urlparse, urlunparse

from param import (
    DEFAULT_RTSP_PATH,
    DEFAULT_RTSP_PORT,
    DOWNLOAD_METADATA_KEYS,
    FTP_METADATA_KEYS,
    FTP_PATH_TEMPLATES,
    HTTP_METADATA_KEYS,
    HTTP_PORTS,
    PLAYBACK_METADATA_KEYS,
    RECORDING_PATH_TEMPLATES,
    RTSP_FALLBACK_PATHS,
    RTSP_PATH_TEMPLATES,
    VIDEO_URL_RE,
)

CREDENTIAL_SCHEMES = ("http", "https", "rtsp")
SCHEME_SUBSTITUTION = {"rtsp": "http", "rtsps": "https"}
VIDEO_URL_PATTERN = re.compile(VIDEO_URL_RE, re.IGNORECASE)


def unique_preserve(values: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def scheme_of(url: str) -> str:
    try:
        return (urlparse(url).scheme or "").lower()
    except ValueError:
        return ""


def is_parseable(url: str) -> bool:
    try:
        parsed = urlparse(url)
        parsed.port
    except ValueError:
        return False
    return True


def format_host(host: str) -> str:
    return f"[{host}]" if ":" in host and not host.startswith("[") else host


def build_url(scheme: str, host: str, port: Optional[int] = None, path: str = "/") -> str:
    netloc = format_host(host)
    if port:
        netloc = f"{netloc}:{port}"
    if not path.startswith("/"):
        path = "/" + path
    return f"{scheme}://{netloc}{path}"


def with_credentials(url: str, credentials: Any) -> str:
    """Embed username/password as user-info for http, https and rtsp URLs.

    Both values must be present; URLs with other schemes, or that already
    carry user-info, are returned unchanged.
    """
    if credentials is None or not getattr(credentials, "complete", False):
        return url
    parsed = urlparse(url)
    if parsed.scheme.lower() not in CREDENTIAL_SCHEMES or "@" in parsed.netloc:
        return url
    userinfo = f"{quote(credentials.username, safe='')}:{quote(credentials.password, safe='')}"
    return urlunparse(parsed._replace(netloc=f"{userinfo}@{parsed.netloc}"))


def is_video_url(url: Optional[str]) -> bool:
    if not url or not is_parseable(url):
        return False
    return bool(VIDEO_URL_PATTERN.search(urlparse(url).path))


def metadata_urls(recording, keys: Iterable[str]) -> List[str]:
    urls = []
    for key in keys:
        value = recording.metadata.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        # Broken URLs in device metadata are dropped, the templates still run
        if is_parseable(value):
            urls.append(value)
    return urls


def _with_thumbnail(recording, urls: List[str]) -> List[str]:
    if is_video_url(recording.thumbnail_url):
        urls.append(recording.thumbnail_url)
    return unique_preserve(urls)


def playback_metadata_candidates(recording) -> List[str]:
    return _with_thumbnail(recording, metadata_urls(recording, PLAYBACK_METADATA_KEYS))


def download_metadata_candidates(recording) -> List[str]:
    return _with_thumbnail(recording, metadata_urls(recording, DOWNLOAD_METADATA_KEYS))


def http_bases(camera, http_port: Optional[int] = None) -> List[str]:
    """HTTP roots derived from the camera record.

    The stream URL is turned into an HTTP root by swapping rtsp for http and
    keeping its port, then the web port of the host is added.
    """
    bases = []
    if camera.stream_url:
        parsed = urlparse(camera.stream_url)
        scheme = SCHEME_SUBSTITUTION.get(parsed.scheme.lower(), parsed.scheme.lower())
        if scheme in ("http", "https") and parsed.hostname:
            bases.append(build_url(scheme, parsed.hostname, parsed.port, "").rstrip("/"))
    else:
        bases.append(build_url("http", camera.endpoint.host, camera.endpoint.port, "").rstrip("/"))
    bases.append(build_url("http", camera.host, http_port or HTTP_PORTS[0], "").rstrip("/"))
    return unique_preserve(bases)


def _quote_filename(filename: str) -> str:
    return quote(filename.lstrip("/"), safe="/")


def http_candidates(
    camera,
    recording,
    http_port: Optional[int] = None,
    include_stream_paths: bool = False,
) -> List[str]:
    """Candidate HTTP URLs for a recording, de-duplicated in priority order.

    ``include_stream_paths`` adds the vendor stream paths served over HTTP;
    only playback uses them since a live feed is not a downloadable file.
    """
    urls = []
    for base in http_bases(camera, http_port):
        if recording.filename:
            filename = _quote_filename(recording.filename)
            urls.extend(base + template.format(filename=filename) for template in RECORDING_PATH_TEMPLATES)
        if include_stream_paths:
            urls.extend(base + path for path in RTSP_PATH_TEMPLATES)
    urls.extend(metadata_urls(recording, HTTP_METADATA_KEYS))
    if is_video_url(recording.thumbnail_url):
        urls.append(recording.thumbnail_url)
    urls = [url for url in urls if scheme_of(url) in ("http", "https")]
    return unique_preserve(with_credentials(url, camera.credentials) for url in urls)


def ftp_candidates(camera, recording) -> List[str]:
    urls = [url for url in metadata_urls(recording, FTP_METADATA_KEYS) if scheme_of(url) == "ftp"]
    if recording.filename:
        filename = _quote_filename(recording.filename)
        urls.extend(
            build_url("ftp", camera.host, None, template.format(filename=filename))
            for template in FTP_PATH_TEMPLATES
        )
    return unique_preserve(urls)


def rtsp_fallback_candidates(camera) -> List[str]:
    """Live stream URLs offered when no recording URL could be validated."""
    if camera.stream_url and scheme_of(camera.stream_url) == "rtsp":
        parsed = urlparse(camera.stream_url)
        path = parsed.path if parsed.path and parsed.path != "/" else DEFAULT_RTSP_PATH
        if parsed.query:
            path = f"{path}?{parsed.query}"
        url = build_url("rtsp", parsed.hostname, parsed.port or DEFAULT_RTSP_PORT, path)
        return [with_credentials(url, camera.credentials)]
    return unique_preserve(
        with_credentials(build_url("rtsp", camera.host, DEFAULT_RTSP_PORT, path), camera.credentials)
        for path in RTSP_FALLBACK_PATHS
    )


def _utc_z(value: datetime.datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).isoformat() + "Z"


def append_time_params(
    uri: str,
    start: Optional[datetime.datetime],
    end: Optional[datetime.datetime],
) -> str:
    """Add the time window in the parameter spellings replay servers accept."""
    params = []
    if start:
        params += [("starttime", _utc_z(start)), ("start", _utc_z(start))]
    if end:
        params += [("endtime", _utc_z(end)), ("end", _utc_z(end))]
    if not params:
        return uri
    parsed = urlparse(uri)
    query = urlencode(params, safe=":")
    if parsed.query:
        query = f"{parsed.query}&{query}"
    return urlunparse(parsed._replace(query=query))
