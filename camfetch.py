import asyncio
import datetime
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, Tuple

from onvif.exceptions import ONVIFError
from zeep.exceptions import Fault

from camclient import CameraClient
from capability_cache import CACHE_DIR, CapabilityCache
from cli import parse_args
from errors import (
    AuthenticationError,
    CapabilityError,
    ExhaustedStrategiesError,
    MalformedInputError,
)
from models import Camera, CameraEndpoint, Credentials, OutcomeCode, RecordingDescriptor
from net_utils import set_accept_self_signed, validate_address, validate_port
from param import WS_DISCOVERY_PORT, player_budget


OUTCOME_EXIT_CODES = {
    OutcomeCode.SUCCESS: 0,
    OutcomeCode.MALFORMED_INPUT: 1,
    OutcomeCode.CAPABILITY_ERROR: 2,
    OutcomeCode.AUTH_FAILED: 3,
    OutcomeCode.EXHAUSTED: 4,
}
EXIT_UNREACHABLE = 5
EXIT_ONVIF_FAULT = 6
EXIT_UNEXPECTED = 7


def emit_json(data: Any, *, default=None) -> None:
    print(
        json.dumps(
            data,
            indent=2,
            ensure_ascii=False,
            default=default or str,
        )
    )


def _parse_time(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedInputError(f"Invalid timestamp: {value!r}") from None


def _credentials(args) -> Optional[Credentials]:
    if not args.username and not args.password:
        return None
    return Credentials(args.username, args.password)


def _discovery_target(value: Optional[str]) -> Optional[Tuple[str, int]]:
    if not value:
        return None
    host, port = value, WS_DISCOVERY_PORT
    # A single colon separates the port, more than one is an IPv6 literal
    if value.count(":") == 1:
        host, port = value.split(":")
    return validate_address(host), validate_port(port)


def build_camera(args) -> Camera:
    endpoint = CameraEndpoint(
        host=args.address,
        port=validate_port(args.port),
        credentials=_credentials(args),
        accept_self_signed_tls=True if args.accept_self_signed else None,
    )
    return Camera(
        endpoint=endpoint,
        stream_url=args.stream_url,
        camera_id=args.camera_id,
        manufacturer=args.manufacturer,
    )


def build_recording(args) -> RecordingDescriptor:
    metadata: Dict[str, Any] = {}
    if args.metadata:
        try:
            metadata = json.loads(args.metadata)
        except json.JSONDecodeError as err:
            raise MalformedInputError(f"--metadata is not valid JSON: {err}") from None
        if not isinstance(metadata, dict):
            raise MalformedInputError("--metadata must be a JSON object")
    return RecordingDescriptor(
        id=args.recording_id,
        filename=args.filename,
        start_time=_parse_time(args.start),
        end_time=_parse_time(args.end),
        metadata=metadata,
    )


async def run_command(args, client: CameraClient) -> Tuple[Dict[str, Any], int]:
    """Execute one CLI subcommand; returns the JSON payload and exit code."""
    if args.command == "scan":
        ports = None
        if args.ports:
            try:
                ports = [int(port) for port in args.ports.split(",") if port.strip()]
            except ValueError:
                raise MalformedInputError(f"Invalid port list: {args.ports!r}") from None
        kwargs = {"timeout": args.timeout}
        if args.concurrency:
            kwargs["concurrency"] = args.concurrency
        hosts = await client.scan_network(args.network, ports, **kwargs)
        return {"network": args.network, "hosts": hosts}, 0

    if args.command == "wsdiscover":
        matches = await client.discover_onvif_devices(
            credentials=_credentials(args),
            timeout=args.timeout,
            target=_discovery_target(args.target),
            detect=not args.no_detect,
        )
        return {"count": len(matches), "devices": [match.to_dict() for match in matches]}, 0

    camera = build_camera(args)

    if args.command == "discover":
        result = await client.discover_device(
            args.address,
            credentials=camera.credentials,
            manufacturer=args.manufacturer,
            camera_id=camera.camera_id,
            force=args.force,
            timeout=args.timeout,
        )
        code = 0 if result.has_any_protocol else EXIT_UNREACHABLE
        return {"camera_id": camera.camera_id, "detection": result.to_dict()}, code

    if args.command == "capabilities":
        capabilities = await client.negotiate_capabilities(camera.endpoint, camera.camera_id)
        return {"camera_id": camera.camera_id, "capabilities": capabilities.to_dict()}, 0

    if args.command == "search":
        recordings = await client.search_recordings(
            camera,
            _parse_time(args.start),
            _parse_time(args.end),
            args.recording_type,
        )
        return {
            "camera_id": camera.camera_id,
            "count": len(recordings),
            "recordings": [recording.to_dict() for recording in recordings],
        }, 0

    if args.command == "playback":
        outcome = await client.resolve_playback(camera, build_recording(args))
        payload = outcome.to_dict()
        if outcome.ok:
            payload["player"] = player_budget()
        return payload, OUTCOME_EXIT_CODES[outcome.code]

    if args.command == "download":
        outcome = await client.resolve_download(camera, build_recording(args), args.destination)
        return outcome.to_dict(), OUTCOME_EXIT_CODES[outcome.code]

    if args.command == "ptz":
        command = {
            "action": args.action,
            "direction": args.direction,
            "speed": args.speed,
            "preset_number": args.preset,
            "duration": args.duration,
        }
        override = (camera.credentials or Credentials()) if args.override else None
        sent = await client.send_ptz_command(camera, command, override_credentials=override)
        return {"camera_id": camera.camera_id, "action": args.action, "sent": sent}, 0 if sent else 4

    if args.command == "stream":
        url = await client.get_live_stream_url(camera)
        payload = {"camera_id": camera.camera_id, "stream_url": url}
        if url:
            payload["player"] = player_budget()
        return payload, 0 if url else 4

    raise MalformedInputError(f"Unknown command: {args.command}")


def main(argv=None):
    args = parse_args(argv)

    log_kwargs = {
        "level": logging.DEBUG if args.debug else logging.INFO,
        "format": "%(asctime)s - %(levelname)s - %(message)s",
        "force": True,
    }
    if args.logfile:
        log_kwargs["filename"] = args.logfile
        log_kwargs["filemode"] = "a"
    elif args.debug:
        log_kwargs["stream"] = sys.stderr
    else:
        log_kwargs["filename"] = os.devnull
    logging.basicConfig(**log_kwargs)

    set_accept_self_signed(args.accept_self_signed)
    client = CameraClient(cache=CapabilityCache(args.cache_dir or CACHE_DIR))

    try:
        payload, code = asyncio.run(run_command(args, client))
    except MalformedInputError as err:
        emit_json({"error": f"Invalid input: {err}"})
        sys.exit(1)
    except CapabilityError as err:
        emit_json({"error": f"Capability error: {err}"})
        sys.exit(2)
    except AuthenticationError as err:
        payload = {"error": f"Authentication failed: {err}", "protocol": err.protocol}
        if err.lock_seconds:
            payload["lock_seconds"] = err.lock_seconds
        emit_json(payload)
        sys.exit(3)
    except ExhaustedStrategiesError as err:
        emit_json({"error": str(err), "attempted": err.attempted})
        sys.exit(4)
    except Fault as fault:
        logging.error("ONVIF Fault: %s", fault, exc_info=True)
        emit_json({"error": f"ONVIF Fault: {fault}"})
        sys.exit(EXIT_ONVIF_FAULT)
    except ONVIFError as err:
        logging.error("ONVIF Error: %s", err, exc_info=True)
        emit_json({"error": f"ONVIF Error: {err}"})
        sys.exit(EXIT_ONVIF_FAULT)
    except OSError as err:
        logging.error("Socket Error: %s", err, exc_info=True)
        emit_json({"error": f"Socket Error: {err}"})
        sys.exit(EXIT_UNREACHABLE)
    except Exception as exc:
        logging.critical("Unexpected Error: %s", exc, exc_info=True)
        emit_json({"error": f"Unexpected Error: {exc}"})
        sys.exit(EXIT_UNEXPECTED)

    emit_json(payload)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
