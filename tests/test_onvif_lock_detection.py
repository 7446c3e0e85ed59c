from types import SimpleNamespace

import pytest
from zeep.exceptions import Fault, TransportError

import onvif_utils
from errors import AuthenticationError
from models import CameraEndpoint, Credentials


@pytest.mark.parametrize("status", [423, 429])
def test_classify_category_http_lock_statuses(status):
    assert onvif_utils._classify_category(status, "Error", exc=None) == "locked"


@pytest.mark.parametrize(
    "fault_code",
    [
        "ter:AccountLocked",
        "ter:PasswordLocked",
        "ter:UserLocked",
        "ter:TooManyFailedAuthenticationAttempts",
    ],
)
def test_classify_category_fault_code_lock(fault_code):
    exc = SimpleNamespace(code=fault_code)
    assert onvif_utils._classify_category(None, "Operation failed", exc=exc) == "locked"


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Please try again in 5 minutes.", 300),
        ("Device locked, retry after 30 seconds", 30),
        ("Account locked for 2 hours", 7200),
        ("Locked", None),
    ],
)
def test_parse_lock_time_variants(message, expected):
    assert onvif_utils.parse_lock_time(message) == expected


def test_locked_result_carries_default_lock_window():
    result = onvif_utils._build_error_result(TransportError("Locked", status_code=423))
    assert result["category"] == "locked"
    assert result["status"] == 423
    assert result["lock_seconds"] == 31 * 60


def test_raise_for_auth_on_lock_keeps_lock_seconds():
    result = onvif_utils._build_error_result(Fault("Too many attempts, try again in 10 minutes"))
    with pytest.raises(AuthenticationError) as excinfo:
        onvif_utils.raise_for_auth(result, "GetCapabilities")
    assert excinfo.value.lock_seconds == 600
    assert excinfo.value.protocol == "onvif"


def test_locked_device_aborts_negotiation(monkeypatch):
    class LockedDevice:
        def GetDeviceInformation(self):
            raise TransportError("Locked", status_code=429)

        def GetCapabilities(self, params):
            raise TransportError("Locked", status_code=429)

    class FakeCamera:
        def create_devicemgmt_service(self):
            return LockedDevice()

        def create_media_service(self):
            return SimpleNamespace(GetProfiles=lambda: [])

    monkeypatch.setattr(onvif_utils, "connect_camera", lambda endpoint: FakeCamera())
    endpoint = CameraEndpoint("192.0.2.1", 80, Credentials("admin", "secret"))

    with pytest.raises(AuthenticationError) as excinfo:
        onvif_utils.negotiate_capabilities_sync(endpoint)
    assert excinfo.value.status == 429
