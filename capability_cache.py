import json
import logging
import os
import re
import threading
from typing import Dict, Iterable, List, Optional

from models import Camera, CameraCapabilities, ProtocolDetectionResult, Tristate

if os.name == "nt":
    try:
        import portalocker

        LOCK_EX = portalocker.LOCK_EX
        LOCK_UN = portalocker.LOCK_UN

        def flock(f, flag):
            if flag == LOCK_UN:
                portalocker.unlock(f)
            else:
                portalocker.lock(f, flag)
    except ImportError:
        import msvcrt

        LOCK_EX = msvcrt.LK_LOCK
        LOCK_UN = msvcrt.LK_UNLCK

        def flock(f, flag):
            size = os.path.getsize(f.name)
            try:
                if size == 0:
                    raise OSError("Cannot lock empty file")
                msvcrt.locking(f.fileno(), flag, size)
            except OSError as e:
                logging.warning("Locking failed for %s: %s", f.name, e)
else:
    import fcntl
    LOCK_EX = fcntl.LOCK_EX
    LOCK_UN = fcntl.LOCK_UN

    def flock(f, flag):
        fcntl.flock(f, flag)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CACHE_DIR = os.path.join(BASE_DIR, "camfetch_cache")

SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


def _entry_path(camera_id: str, cache_dir: Optional[str] = None) -> str:
    name = SAFE_NAME_RE.sub("_", camera_id)
    return os.path.join(cache_dir or CACHE_DIR, f"{name}_capabilities.json")


def _write_json(path: str, data) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    try:
        with open(path, "a+", encoding="utf-8") as lock_file:
            flock(lock_file, LOCK_EX)
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            finally:
                flock(lock_file, LOCK_UN)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def _read_json(path: str):
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r+", encoding="utf-8") as f:
            flock(f, LOCK_EX)
            try:
                return json.load(f)
            finally:
                flock(f, LOCK_UN)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logging.warning("Discarding corrupt cache file %s", path)
        try:
            os.remove(path)
        except OSError:
            pass
        return None


def load_entry(camera_id: str, cache_dir: Optional[str] = None) -> Dict[str, object]:
    data = _read_json(_entry_path(camera_id, cache_dir))
    entry = {"detection": None, "capabilities": None}
    if not isinstance(data, dict):
        return entry
    try:
        if isinstance(data.get("detection"), dict):
            entry["detection"] = ProtocolDetectionResult.from_dict(data["detection"])
        if isinstance(data.get("capabilities"), dict):
            entry["capabilities"] = CameraCapabilities.from_dict(data["capabilities"])
    except (KeyError, TypeError, ValueError):
        logging.warning("Ignoring malformed cache entry for %s", camera_id)
        return {"detection": None, "capabilities": None}
    return entry


def save_entry(
    camera_id: str,
    detection: Optional[ProtocolDetectionResult],
    capabilities: Optional[CameraCapabilities],
    cache_dir: Optional[str] = None,
) -> None:
    _write_json(
        _entry_path(camera_id, cache_dir),
        {
            "camera_id": camera_id,
            "detection": detection.to_dict() if detection else None,
            "capabilities": capabilities.to_dict() if capabilities else None,
        },
    )


def remove_entry(camera_id: str, cache_dir: Optional[str] = None) -> None:
    path = _entry_path(camera_id, cache_dir)
    if os.path.exists(path):
        os.remove(path)


def load_cameras(path: str) -> List[Camera]:
    data = _read_json(path)
    if not isinstance(data, list):
        return []
    cameras = []
    for item in data:
        try:
            cameras.append(Camera.from_dict(item))
        except (KeyError, TypeError, ValueError):
            logging.warning("Skipping malformed camera record: %r", item)
    return cameras


def save_cameras(path: str, cameras: Iterable[Camera]) -> None:
    _write_json(path, [camera.to_dict() for camera in cameras])


class CapabilityCache:
    """Per-camera detection results and capabilities.

    Entries change only through explicit writes and :meth:`invalidate`;
    nothing expires on its own.  With ``cache_dir`` set every write is
    persisted and misses are looked up on disk.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = cache_dir
        self._detection: Dict[str, ProtocolDetectionResult] = {}
        self._capabilities: Dict[str, CameraCapabilities] = {}
        self._loaded = set()
        self._lock = threading.Lock()

    def _ensure_loaded(self, camera_id: str) -> None:
        if self.cache_dir is None or camera_id in self._loaded:
            return
        self._loaded.add(camera_id)
        entry = load_entry(camera_id, self.cache_dir)
        if entry["detection"] is not None:
            self._detection.setdefault(camera_id, entry["detection"])
        if entry["capabilities"] is not None:
            self._capabilities.setdefault(camera_id, entry["capabilities"])

    def _persist(self, camera_id: str) -> None:
        if self.cache_dir is None:
            return
        save_entry(
            camera_id,
            self._detection.get(camera_id),
            self._capabilities.get(camera_id),
            self.cache_dir,
        )

    def get_detection(self, camera_id: str) -> Optional[ProtocolDetectionResult]:
        with self._lock:
            self._ensure_loaded(camera_id)
            return self._detection.get(camera_id)

    def set_detection(self, camera_id: str, result: ProtocolDetectionResult) -> None:
        with self._lock:
            self._ensure_loaded(camera_id)
            self._detection[camera_id] = result
            self._persist(camera_id)

    def get_capabilities(self, camera_id: str) -> Optional[CameraCapabilities]:
        with self._lock:
            self._ensure_loaded(camera_id)
            return self._capabilities.get(camera_id)

    def set_capabilities(self, camera_id: str, capabilities: CameraCapabilities) -> None:
        with self._lock:
            self._ensure_loaded(camera_id)
            self._capabilities[camera_id] = capabilities
            self._persist(camera_id)

    def profile_g(self, camera_id: str) -> Tristate:
        capabilities = self.get_capabilities(camera_id)
        if capabilities is None:
            return Tristate.UNKNOWN
        return capabilities.supports_onvif_profile_g

    def mark_profile_g(self, camera_id: str, value: Tristate) -> None:
        with self._lock:
            self._ensure_loaded(camera_id)
            capabilities = self._capabilities.get(camera_id) or CameraCapabilities()
            capabilities.supports_onvif_profile_g = Tristate.from_value(value)
            self._capabilities[camera_id] = capabilities
            self._persist(camera_id)
        logging.info("Profile G support for %s set to %s", camera_id, value)

    def invalidate(self, camera_id: str) -> None:
        with self._lock:
            self._detection.pop(camera_id, None)
            self._capabilities.pop(camera_id, None)
            # Stay marked as loaded so the removed file is not read back
            self._loaded.add(camera_id)
            if self.cache_dir is not None:
                remove_entry(camera_id, self.cache_dir)
        logging.info("Capability cache invalidated for %s", camera_id)
