import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from dvrip import PTZ_REQ, RET_AUTH_CODES, RET_OK, RET_UPGRADE_OK, DvripSession
from errors import AuthenticationError, CapabilityError, InvalidCommandError
from onvif_utils import create_service, open_camera, raise_for_auth, run_onvif, safe_call
from param import DEFAULT_USERNAME, ONVIF_CALL_TIMEOUT, PTZ_DEFAULT_MOVE_SECONDS, PTZ_SPEED_LEVELS, get_scan_timeout


class PtzAction(str, Enum):
    MOVE = "move"
    ZOOM = "zoom"
    STOP = "stop"
    PRESET = "preset"
    AUTO_SCAN = "autoScan"
    FOCUS = "focus"


class PtzDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    UP_LEFT = "upLeft"
    UP_RIGHT = "upRight"
    DOWN_LEFT = "downLeft"
    DOWN_RIGHT = "downRight"
    ZOOM_IN = "zoomIn"
    ZOOM_OUT = "zoomOut"
    FOCUS_NEAR = "focusNear"
    FOCUS_FAR = "focusFar"
    STOP = "stop"


class PtzSpeed(int, Enum):
    SLOW = 1
    MEDIUM = 3
    FAST = 5
    VERY_FAST = 7


PAN_TILT_VECTORS = {
    PtzDirection.UP: (0, 1),
    PtzDirection.DOWN: (0, -1),
    PtzDirection.LEFT: (-1, 0),
    PtzDirection.RIGHT: (1, 0),
    PtzDirection.UP_LEFT: (-1, 1),
    PtzDirection.UP_RIGHT: (1, 1),
    PtzDirection.DOWN_LEFT: (-1, -1),
    PtzDirection.DOWN_RIGHT: (1, -1),
}
ZOOM_VECTORS = {PtzDirection.ZOOM_IN: 1, PtzDirection.ZOOM_OUT: -1}
FOCUS_VECTORS = {PtzDirection.FOCUS_NEAR: -1, PtzDirection.FOCUS_FAR: 1}

ALLOWED_DIRECTIONS = {
    PtzAction.MOVE: set(PAN_TILT_VECTORS),
    PtzAction.ZOOM: set(ZOOM_VECTORS),
    PtzAction.FOCUS: set(FOCUS_VECTORS),
}

# OPPTZControl command names understood by DVRIP firmwares
DVRIP_COMMANDS = {
    PtzDirection.UP: "DirectionUp",
    PtzDirection.DOWN: "DirectionDown",
    PtzDirection.LEFT: "DirectionLeft",
    PtzDirection.RIGHT: "DirectionRight",
    PtzDirection.UP_LEFT: "DirectionLeftUp",
    PtzDirection.UP_RIGHT: "DirectionRightUp",
    PtzDirection.DOWN_LEFT: "DirectionLeftDown",
    PtzDirection.DOWN_RIGHT: "DirectionRightDown",
    PtzDirection.ZOOM_IN: "ZoomTile",
    PtzDirection.ZOOM_OUT: "ZoomWide",
    PtzDirection.FOCUS_NEAR: "FocusNear",
    PtzDirection.FOCUS_FAR: "FocusFar",
}

MAX_PRESET = 255
MAX_DURATION = 60


@dataclass(frozen=True)
class PtzCommand:
    action: PtzAction
    direction: Optional[PtzDirection] = None
    speed: PtzSpeed = PtzSpeed.MEDIUM
    preset_number: Optional[int] = None
    duration: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PtzCommand":
        return validate_command(
            cls(
                action=data.get("action"),
                direction=data.get("direction"),
                speed=data.get("speed", PtzSpeed.MEDIUM),
                preset_number=data.get("preset_number"),
                duration=data.get("duration"),
            )
        )

    @property
    def direction_code(self) -> Optional[str]:
        """UP_LEFT style name used in logs and proprietary payloads."""
        if self.direction is None:
            return None
        return self.direction.name


def validate_command(command: PtzCommand) -> PtzCommand:
    """Check and normalise a command without touching the network."""
    try:
        action = PtzAction(command.action)
        direction = PtzDirection(command.direction) if command.direction is not None else None
        speed = command.speed
        if isinstance(speed, str):
            speed = PtzSpeed[speed.upper()] if not speed.isdigit() else int(speed)
        speed = PtzSpeed(speed)
    except (KeyError, ValueError) as err:
        raise InvalidCommandError(str(err)) from None

    allowed = ALLOWED_DIRECTIONS.get(action)
    if allowed is not None and direction not in allowed:
        raise InvalidCommandError(f"{action.value} does not accept direction {direction and direction.value}")
    if action is PtzAction.STOP and direction not in (None, PtzDirection.STOP):
        raise InvalidCommandError("stop does not take a direction")

    preset = command.preset_number
    if action is PtzAction.PRESET:
        if isinstance(preset, bool) or not isinstance(preset, int) or not 1 <= preset <= MAX_PRESET:
            raise InvalidCommandError(f"Invalid preset number: {preset!r}")
    elif preset is not None:
        raise InvalidCommandError("Only preset commands carry a preset number")

    duration = command.duration
    if duration is not None:
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or not 0 < duration <= MAX_DURATION:
            raise InvalidCommandError(f"Invalid duration: {duration!r}")
        if action not in ALLOWED_DIRECTIONS:
            raise InvalidCommandError(f"{action.value} does not take a duration")

    return PtzCommand(action, direction, speed, preset, duration)


def build_ptz_payload(command: PtzCommand, *, start: bool = True) -> Dict[str, Any]:
    """OPPTZControl body for DVRIP.  Preset 65535 starts a move, -1 stops it."""
    preset = 65535 if start else -1
    tour = 0
    if command.action is PtzAction.PRESET:
        name = "GotoPreset"
        preset = command.preset_number
    elif command.action is PtzAction.AUTO_SCAN:
        name = "StartTour"
        tour = 1
    elif command.action is PtzAction.STOP:
        # Any direction with the stop marker halts the motor
        name = DVRIP_COMMANDS[PtzDirection.UP]
        preset = -1
    else:
        name = DVRIP_COMMANDS[command.direction]
    return {
        "Command": name,
        "Parameter": {
            "AUX": {"Number": 0, "Status": "On"},
            "Channel": 0,
            "MenuOpts": "Enter",
            "POINT": {"bottom": 0, "left": 0, "right": 0, "top": 0},
            "Pattern": "SetBegin",
            "Preset": preset,
            "Step": int(command.speed),
            "Tour": tour,
        },
    }


def _check(result: Dict[str, Any], method: str) -> bool:
    raise_for_auth(result, method)
    if not result["success"]:
        logging.info("PTZ %s failed: %s", method, result.get("error"))
    return result["success"]


def send_onvif_ptz_sync(endpoint, command: PtzCommand) -> bool:
    camera = open_camera(endpoint, "ONVIF PTZ")
    if camera is None:
        return False
    services: Dict[str, Any] = {}
    media = create_service(camera, "media", services)
    if not media["success"]:
        return False
    profiles = safe_call(media["result"], "GetProfiles")
    if not _check(profiles, "GetProfiles") or not profiles["result"]:
        return False
    profile = profiles["result"][0]
    token = profile.token
    level = PTZ_SPEED_LEVELS[int(command.speed)]
    hold = command.duration or PTZ_DEFAULT_MOVE_SECONDS

    if command.action is PtzAction.FOCUS:
        imaging = create_service(camera, "imaging", services)
        if not imaging["success"]:
            return False
        source = profile.VideoSourceConfiguration.SourceToken
        move = safe_call(
            imaging["result"],
            "Move",
            {"VideoSourceToken": source, "Focus": {"Continuous": {"Speed": FOCUS_VECTORS[command.direction] * level}}},
        )
        if not _check(move, "Imaging.Move"):
            return False
        time.sleep(hold)
        return _check(safe_call(imaging["result"], "Stop", {"VideoSourceToken": source}), "Imaging.Stop")

    ptz_service = create_service(camera, "ptz", services)
    if not ptz_service["success"]:
        return False
    ptz = ptz_service["result"]

    if command.action is PtzAction.STOP:
        return _check(safe_call(ptz, "Stop", {"ProfileToken": token, "PanTilt": True, "Zoom": True}), "Stop")
    if command.action is PtzAction.PRESET:
        request = {"ProfileToken": token, "PresetToken": str(command.preset_number)}
        return _check(safe_call(ptz, "GotoPreset", request), "GotoPreset")
    if command.action is PtzAction.AUTO_SCAN:
        tours = safe_call(ptz, "GetPresetTours", {"ProfileToken": token})
        if not _check(tours, "GetPresetTours") or not tours["result"]:
            return False
        request = {"ProfileToken": token, "PresetTourToken": tours["result"][0].token, "Operation": "Start"}
        return _check(safe_call(ptz, "OperatePresetTour", request), "OperatePresetTour")

    if command.action is PtzAction.ZOOM:
        velocity = {"Zoom": {"x": ZOOM_VECTORS[command.direction] * level}}
    else:
        x, y = PAN_TILT_VECTORS[command.direction]
        velocity = {"PanTilt": {"x": x * level, "y": y * level}}
    if not _check(safe_call(ptz, "ContinuousMove", {"ProfileToken": token, "Velocity": velocity}), "ContinuousMove"):
        return False
    try:
        time.sleep(hold)
    finally:
        stopped = safe_call(ptz, "Stop", {"ProfileToken": token, "PanTilt": True, "Zoom": True})
    return _check(stopped, "Stop")


async def send_proprietary_ptz(host: str, port: int, credentials: Any, command: PtzCommand) -> bool:
    username = getattr(credentials, "username", None) or DEFAULT_USERNAME
    password = getattr(credentials, "password", None) or ""
    try:
        async with DvripSession(host, port, timeout=get_scan_timeout("rtsp")) as session:
            ret = await session.login(username, password)
            if ret in RET_AUTH_CODES:
                raise AuthenticationError("DVRIP login rejected", protocol="dvrip", status=ret)
            if ret not in (RET_OK, RET_UPGRADE_OK):
                return False
            ret = await session.command(PTZ_REQ, "OPPTZControl", build_ptz_payload(command))
            if ret != RET_OK:
                logging.info("DVRIP PTZ %s rejected with %s", command.action.value, ret)
                return False
            if command.action in ALLOWED_DIRECTIONS:
                await asyncio.sleep(command.duration or PTZ_DEFAULT_MOVE_SECONDS)
                await session.command(PTZ_REQ, "OPPTZControl", build_ptz_payload(command, start=False))
            return True
    except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError, OSError, ValueError) as err:
        logging.debug("DVRIP PTZ on %s:%s failed: %s", host, port, err)
        return False


async def send_ptz_command(
    endpoint,
    command: PtzCommand,
    *,
    capabilities=None,
    detection=None,
    override: bool = False,
) -> bool:
    """Dispatch over ONVIF when the device offers PTZ there, else over DVRIP.

    Without detected PTZ support the command is refused unless ``override``
    is set (explicit credentials supplied for control).
    """
    command = validate_command(command)
    has_ptz = bool(capabilities and capabilities.has_ptz)
    if not has_ptz and not override:
        raise CapabilityError(f"No PTZ capability detected on {endpoint.host}")

    onvif_possible = has_ptz or (detection is not None and detection.onvif_available) or detection is None
    if onvif_possible:
        onvif_endpoint = endpoint
        if detection is not None and detection.onvif_port and endpoint.port != detection.onvif_port:
            onvif_endpoint = replace(endpoint, port=detection.onvif_port)
        try:
            budget = ONVIF_CALL_TIMEOUT * 4 + (command.duration or PTZ_DEFAULT_MOVE_SECONDS)
            if await run_onvif(send_onvif_ptz_sync, onvif_endpoint, command, timeout=budget):
                return True
        except asyncio.TimeoutError:
            logging.info("ONVIF PTZ timed out on %s", endpoint.host)
    if detection is not None and detection.proprietary_available and detection.proprietary_port:
        return await send_proprietary_ptz(endpoint.host, detection.proprietary_port, endpoint.credentials, command)
    return False
