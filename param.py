# Central configuration for camfetch parameters

from typing import Dict, Iterable, List, Optional

# Default username used when a camera record carries none
DEFAULT_USERNAME = "admin"

# Anonymous FTP login used when no credentials are supplied
FTP_ANONYMOUS_USER = "anonymous"
FTP_ANONYMOUS_PASSWORD = "anonymous@"

# Default RTSP port used when none is provided
DEFAULT_RTSP_PORT = 554

# Default RTSP path used when rebuilding a stream URL without a path
DEFAULT_RTSP_PATH = "/stream1"

# Candidate HTTP ports, priority ordered.  8899 is the most common port for
# the web/ONVIF service on low-cost firmwares.
HTTP_PORTS = [8899, 8080, 8081, 8000, 8008, 8888, 9000, 81, 82, 83] + list(range(8082, 8100))

# Candidate RTSP ports, priority ordered
RTSP_PORTS = [554, 8554, 1935, 7001, 5554, 8000, 8080]

# Ports probed for the ONVIF device service.  3702 is WS-Discovery over UDP and
# is therefore not part of the TCP probe list.
ONVIF_PORTS = [80, 8080, 8000, 8899, 554, 8554]

# Ports of proprietary DVR/NVR protocols (XMEye/Sofia, Dahua, NetSurveillance)
PROPRIETARY_PORTS = [34567, 37777, 9000, 6036]

# Ports most frequently open on consumer cameras
MOST_COMMON_PORTS = [8899, 554, 8080, 8081, 37777, 34567, 8000, 9000]

# RTSP ports tried before anything else
RTSP_PRIORITY_PORTS = [554, 8554, 1935]

# Ports that are almost exclusively used by camera firmwares
CAMERA_SPECIFIC_PORTS = [37777, 34567, 8899, 6036]

# Generic web ports shared with many other services
COMMON_WEB_PORTS = [8080, 8000, 9000]

# Per-manufacturer port tables, keyed by lowercase manufacturer name
MANUFACTURER_PORTS = {
    "hikvision": [8000, 554, 8080],
    "dahua": [37777, 554, 8080],
    "axis": [554, 8080, 8000],
    "foscam": [88, 554, 8080],
    "tp-link": [554, 8080, 9000],
    "xiaomi": [554, 8080, 8000],
    "reolink": [554, 9000, 8000],
    "amcrest": [554, 37777, 8080],
    "generic": [554, 8080, 8899, 34567, 37777, 9000, 6036],
}

# Weights used to order candidate ports.  Only the relative order matters:
# RTSP priority ports > camera-specific ports > ONVIF ports > generic web
# ports > port 80.
SCORE_RTSP = 10.0
SCORE_RTSP_PRIORITY = 5.0
SCORE_CAMERA_SPECIFIC = 8.0
SCORE_ONVIF = 6.0
SCORE_COMMON_WEB = 3.0
SCORE_PORT_80 = -5.0

# Number of scored ports used by the intelligent scan phase
INTELLIGENT_TOP_PORTS = 10

# Scan timeout presets in seconds
SCAN_TIMEOUTS = {
    "fast": 2,
    "common": 3,
    "rtsp": 5,
    "full": 10,
}

# Timeouts (seconds) used while resolving recordings.  Probes are short so dead
# candidates are eliminated quickly; transfers get a fixed two minute budget.
HTTP_PROBE_TIMEOUT = 12
RTSP_CONNECT_TIMEOUT = 4
HTTP_DOWNLOAD_TIMEOUT = 120
FTP_CONNECT_TIMEOUT = 6
FTP_REPLY_TIMEOUT = 4
FTP_TRANSFER_TIMEOUT = 120
ONVIF_CALL_TIMEOUT = 15

# Maximum number of concurrent connections during a subnet scan
SCAN_CONCURRENCY = 50

# WS-Discovery multicast group and port.  Matches are awaited for
# WS_DISCOVERY_TIMEOUT seconds, the Probe is repeated WS_DISCOVERY_ROUNDS times.
WS_DISCOVERY_ADDRESS = "239.255.255.250"
WS_DISCOVERY_PORT = 3702
WS_DISCOVERY_TIMEOUT = 4
WS_DISCOVERY_ROUNDS = 2
WS_DISCOVERY_TTL = 2

# Retries granted to an external player when opening a validated URL
PLAYER_MAX_RETRIES = 3

# Common RTSP paths, substream before mainstream to keep probing cheap
RTSP_PATH_TEMPLATES = [
    "/cam/realmonitor?channel=1&subtype=1",
    "/cam/realmonitor?channel=1&subtype=0",
    "/axis-media/media.amp",
    "/axis-media/media.amp?videocodec=h264",
    "/Streaming/Channels/102",
    "/Streaming/Channels/101",
    "/Streaming/tracks/101",
    "/videoSub",
    "/videoMain",
    "/video.cgi",
    "/onvif/media_service/stream_1",
    "/onvif1",
    "/stream2",
    "/stream1",
    "/stream/1",
    "/play1.sdp",
    "/live.sdp",
    "/h264Preview_01_sub",
    "/h264Preview_01_main",
    "/live/ch00_1",
    "/live/ch00_0",
    "/11",
    "/12",
    "/h264",
    "/live",
    "/",
]

# Short list tried by the RTSP playback fallback when the camera record does
# not already carry an rtsp:// stream URL
RTSP_FALLBACK_PATHS = [
    "/Streaming/tracks/101",
    "/cam/realmonitor?channel=1&subtype=0",
    "/live/ch00_0",
    "/stream1",
    "/h264",
]

# Vendor HTTP path templates where recordings are commonly exposed
RECORDING_PATH_TEMPLATES = [
    "/recordings/{filename}",
    "/record/{filename}",
    "/sd/record/{filename}",
    "/sdcard/rec/{filename}",
    "/media/{filename}",
    "/video/{filename}",
    "/files/{filename}",
    "/download/{filename}",
    "/hdd/{filename}",
    "/NVR/record/{filename}",
    "/dav/{filename}",
    "/mnt/sd/{filename}",
    "/mnt/ide0/{filename}",
    "/tmpfs/auto/tmp/{filename}",
]

# FTP servers on cameras frequently serve the record folder as the root
FTP_PATH_TEMPLATES = RECORDING_PATH_TEMPLATES + ["/{filename}"]

# Metadata keys checked, in order, for a playable URL
PLAYBACK_METADATA_KEYS = ("playbackUrl", "rtspUrl", "httpUrl", "url")

# Metadata keys checked, in order, for a direct download URL
DOWNLOAD_METADATA_KEYS = ("downloadUrl", "playbackUrl", "httpUrl")

# Metadata keys appended to the generated HTTP candidate list
HTTP_METADATA_KEYS = ("downloadUrl", "httpUrl", "url")

# Metadata keys that may carry an ftp:// URL
FTP_METADATA_KEYS = ("downloadUrl", "url")

# Thumbnail URLs are only trusted when they point at a video file
VIDEO_URL_RE = r"\.(mp4|mkv|ts|flv|avi)$"

# Directories listed over HTTP when ONVIF recording search is unavailable
HTTP_LISTING_PATHS = ["/sd/", "/recordings/", "/media/"]

# Directories listed over FTP when ONVIF recording search is unavailable
FTP_LISTING_DIRS = [
    "/",
    "/record",
    "/recordings",
    "/video",
    "/media",
    "/mnt/sd/record",
    "/mnt/sdcard/record",
    "/DCIM",
]

# File extensions treated as recordings in directory listings
VIDEO_EXTENSIONS = ("mp4", "avi", "mov", "mkv", "ts", "264", "h264")

# Filename conventions carrying the recording start time.  Each entry holds
# the pattern and the strptime format of its first group ("epoch" for unix
# timestamps).
RECORDING_FILENAME_PATTERNS = [
    (r"(\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})\.mp4", "%Y-%m-%d_%H-%M-%S"),
    (r"(\d{8}_\d{6})\.h264", "%Y%m%d_%H%M%S"),
    (r"(\d{14})\.avi", "%Y%m%d%H%M%S"),
    (r"rec_(\d+)\.mp4", "epoch"),
]

# Maximum number of recordings requested from an ONVIF search
ONVIF_MAX_MATCHES = 100

# Rounds of GetRecordingSearchResults before a search is abandoned
ONVIF_SEARCH_ROUNDS = 10

# ONVIF calls issued, in order, during capability negotiation.  Critical
# calls decide whether the device is usable; the others only enrich the
# capability summary.
ONVIF_PRIORITY_METHODS = [
    {
        "service": "devicemgmt",
        "method": "GetDeviceInformation",
        "params": None,
        "critical": True,
        "target": "device",
    },
    {
        "service": "devicemgmt",
        "method": "GetCapabilities",
        "params": {"Category": "All"},
        "critical": True,
        "target": "device",
    },
    {
        "service": "media",
        "method": "GetProfiles",
        "params": None,
        "critical": False,
        "target": "media",
    },
]

# Continuous PTZ velocity per speed level, as a fraction of the device range
PTZ_SPEED_LEVELS = {1: 0.2, 3: 0.5, 5: 0.8, 7: 1.0}

# Seconds a continuous ONVIF move runs before Stop when no duration is given
PTZ_DEFAULT_MOVE_SECONDS = 0.5


def get_manufacturer_ports(manufacturer: Optional[str]) -> List[int]:
    """Return the port table for a manufacturer, or the generic table."""
    key = (manufacturer or "").strip().lower()
    return list(MANUFACTURER_PORTS.get(key, MANUFACTURER_PORTS["generic"]))


def get_scan_timeout(name: str) -> int:
    return SCAN_TIMEOUTS.get(name, SCAN_TIMEOUTS["common"])


def score_port(port: int) -> float:
    score = 0.0
    if port in RTSP_PORTS:
        score += SCORE_RTSP
    if port in RTSP_PRIORITY_PORTS:
        score += SCORE_RTSP_PRIORITY
    if port in CAMERA_SPECIFIC_PORTS:
        score += SCORE_CAMERA_SPECIFIC
    if port in ONVIF_PORTS:
        score += SCORE_ONVIF
    if port in COMMON_WEB_PORTS:
        score += SCORE_COMMON_WEB
    if port == 80:
        score += SCORE_PORT_80
    return score


def _unique_ports(ports: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for port in ports:
        if port in seen:
            continue
        seen.add(port)
        ordered.append(port)
    return ordered


def order_ports(candidates: Iterable[int]) -> List[int]:
    """Sort candidates by descending score; ties keep their input order."""
    unique = _unique_ports(candidates)
    # sorted() is stable, so equal scores keep first-seen order
    return sorted(unique, key=lambda port: -score_port(port))


def get_dynamic_priority_ports() -> List[int]:
    """All known camera ports ordered by their protocol exclusivity score."""
    return order_ports(
        RTSP_PORTS + CAMERA_SPECIFIC_PORTS + ONVIF_PORTS + COMMON_WEB_PORTS + MOST_COMMON_PORTS
    )


def get_fast_discovery_ports() -> List[int]:
    return _unique_ports(RTSP_PRIORITY_PORTS + MOST_COMMON_PORTS)


def get_intelligent_discovery_ports() -> List[int]:
    top = get_dynamic_priority_ports()[:INTELLIGENT_TOP_PORTS]
    return _unique_ports(top + get_fast_discovery_ports())


def player_init_timeout(retry: int) -> int:
    """Seconds an external player gets to open a stream on the given retry."""
    return 30 + 15 * max(retry, 0)


def player_retry_delay(retry: int) -> int:
    return 5 * (max(retry, 0) + 1)


def player_budget(retries: int = PLAYER_MAX_RETRIES) -> List[Dict[str, int]]:
    """Open timeout and pause before each attempt, handed to external players
    along with a resolved URL."""
    return [
        {"retry": retry, "init_timeout": player_init_timeout(retry), "retry_delay": player_retry_delay(retry)}
        for retry in range(retries)
    ]
