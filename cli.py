import argparse


def _add_camera_args(parser):
    parser.add_argument("address", help="Camera IP address or hostname")
    parser.add_argument("--port", type=int, default=80, help="ONVIF/HTTP port of the camera")
    parser.add_argument("--stream-url", help="Known RTSP stream URL of the camera")
    parser.add_argument("--camera-id", help="Identifier used for the capability cache")
    parser.add_argument("--manufacturer", help="Manufacturer hint for port ordering")


def _add_recording_args(parser):
    parser.add_argument("--recording-id", default="recording", help="Recording identifier")
    parser.add_argument("--filename", help="Recording file name on the device")
    parser.add_argument(
        "--metadata",
        help="JSON object with recording metadata (playbackUrl, downloadUrl, ...)",
    )
    parser.add_argument("--start", help="Recording start time (ISO 8601)")
    parser.add_argument("--end", help="Recording end time (ISO 8601)")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Camera discovery and recording retrieval")
    parser.add_argument("--logfile", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--username", help="Username for camera authentication")
    parser.add_argument("--password", help="Password for camera authentication")
    parser.add_argument(
        "--accept-self-signed",
        action="store_true",
        help="Accept self-signed TLS certificates from cameras",
    )
    parser.add_argument("--cache-dir", help="Directory for the persistent capability cache")
    parser.add_argument(
        "--timeout",
        type=float,
        help="Override the per-probe timeout in seconds",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Detect ONVIF, proprietary, RTSP and HTTP services")
    _add_camera_args(discover)
    discover.add_argument("--force", action="store_true", help="Ignore cached detection results")

    wsdiscover = sub.add_parser("wsdiscover", help="Find ONVIF devices with a WS-Discovery multicast search")
    wsdiscover.add_argument("--target", help="Query one device directly instead of the multicast group (host[:port])")
    wsdiscover.add_argument("--no-detect", action="store_true", help="Skip protocol detection of the devices found")

    scan = sub.add_parser("scan", help="TCP sweep of a network")
    scan.add_argument("network", help="Network in CIDR notation, e.g. 192.168.1.0/24")
    scan.add_argument("--ports", help="Comma separated ports (default: phased camera ports)")
    scan.add_argument("--concurrency", type=int, help="Maximum simultaneous connection attempts")

    capabilities = sub.add_parser("capabilities", help="Negotiate ONVIF capabilities")
    _add_camera_args(capabilities)

    search = sub.add_parser("search", help="Search recordings")
    _add_camera_args(search)
    search.add_argument("--start", help="Range start (ISO 8601)")
    search.add_argument("--end", help="Range end (ISO 8601)")
    search.add_argument("--type", dest="recording_type", help="Recording type filter")

    playback = sub.add_parser("playback", help="Resolve a playable URL for a recording")
    _add_camera_args(playback)
    _add_recording_args(playback)

    download = sub.add_parser("download", help="Download a recording")
    _add_camera_args(download)
    _add_recording_args(download)
    download.add_argument("destination", help="Destination file or directory")

    ptz = sub.add_parser("ptz", help="Send a PTZ command")
    _add_camera_args(ptz)
    ptz.add_argument(
        "action",
        choices=["move", "zoom", "stop", "preset", "autoScan", "focus"],
        help="PTZ action",
    )
    ptz.add_argument("--direction", help="Direction, e.g. up, downLeft, zoomIn, focusNear")
    ptz.add_argument("--speed", default="3", help="Speed level 1, 3, 5 or 7 (or slow/medium/fast/very_fast)")
    ptz.add_argument("--preset", type=int, help="Preset number 1-255")
    ptz.add_argument("--duration", type=float, help="Seconds to keep moving before stopping")
    ptz.add_argument(
        "--override",
        action="store_true",
        help="Send even when no PTZ capability was detected",
    )

    stream = sub.add_parser("stream", help="Resolve the live stream URL")
    _add_camera_args(stream)

    return parser.parse_args(argv)
