import io
import json
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from zeep.exceptions import Fault

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import camfetch
from camclient import CameraClient
from errors import AuthenticationError, CapabilityError
from models import OnvifDeviceMatch, Outcome, OutcomeCode, ProtocolDetectionResult, RecordingDescriptor


class CamfetchCliTests(unittest.TestCase):
    def setUp(self):
        self.cache_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.cache_dir, True)

    def run_main(self, *argv):
        """Run the CLI; returns (exit code, parsed JSON output)."""
        stdout = io.StringIO()
        code = 0
        with patch("sys.stdout", stdout):
            try:
                camfetch.main(["--cache-dir", self.cache_dir, *argv])
            except SystemExit as exc:
                code = exc.code
        return code, json.loads(stdout.getvalue())

    def test_search_lists_recordings(self):
        recordings = [RecordingDescriptor(id="rec-1", filename="clip.mp4")]
        with patch.object(CameraClient, "search_recordings", new=AsyncMock(return_value=recordings)) as search:
            code, payload = self.run_main("search", "192.168.1.50", "--start", "2024-05-01T00:00:00")

        self.assertEqual(code, 0)
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["recordings"][0]["id"], "rec-1")
        self.assertEqual(payload["camera_id"], "192.168.1.50:80")
        camera, start, end, recording_type = search.call_args.args
        self.assertEqual(start.year, 2024)
        self.assertIsNone(end)

    def test_invalid_timestamp_is_malformed_input(self):
        code, payload = self.run_main("search", "192.168.1.50", "--start", "yesterday")
        self.assertEqual(code, 1)
        self.assertIn("Invalid input", payload["error"])

    def test_invalid_port_is_malformed_input(self):
        code, payload = self.run_main("stream", "192.168.1.50", "--port", "70000")
        self.assertEqual(code, 1)

    def test_metadata_must_be_a_json_object(self):
        code, payload = self.run_main("playback", "192.168.1.50", "--metadata", "[1, 2]")
        self.assertEqual(code, 1)
        self.assertIn("--metadata", payload["error"])

    def test_rejected_credentials_exit_code(self):
        error = AuthenticationError("Credentials rejected by http_listing", protocol="http_listing")
        with patch.object(CameraClient, "search_recordings", new=AsyncMock(side_effect=error)):
            code, payload = self.run_main("--username", "admin", "--password", "bad", "search", "192.168.1.50")

        self.assertEqual(code, 3)
        self.assertEqual(payload["protocol"], "http_listing")
        self.assertNotIn("lock_seconds", payload)

    def test_lockout_is_reported(self):
        error = AuthenticationError("Account locked", protocol="onvif", status=423, lock_seconds=300)
        with patch.object(CameraClient, "negotiate_capabilities", new=AsyncMock(side_effect=error)):
            code, payload = self.run_main("capabilities", "192.168.1.50")

        self.assertEqual(code, 3)
        self.assertEqual(payload["lock_seconds"], 300)

    def test_exhausted_playback_prints_outcome(self):
        outcome = Outcome(
            OutcomeCode.EXHAUSTED,
            "get_playback_url",
            "192.168.1.50:80",
            reason="All strategies failed: metadata, http, rtsp",
            attempted=["metadata", "http", "rtsp"],
        )
        with patch.object(CameraClient, "resolve_playback", new=AsyncMock(return_value=outcome)):
            code, payload = self.run_main("playback", "192.168.1.50", "--recording-id", "r1")

        self.assertEqual(code, 4)
        self.assertEqual(payload["code"], "exhausted")
        self.assertEqual(payload["attempted"], ["metadata", "http", "rtsp"])
        self.assertNotIn("player", payload)

    def test_successful_playback_exits_cleanly(self):
        url = "http://192.168.1.50:8899/cam/realmonitor?channel=1&subtype=1"
        outcome = Outcome(OutcomeCode.SUCCESS, "get_playback_url", "192.168.1.50:80", value=url)
        with patch.object(CameraClient, "resolve_playback", new=AsyncMock(return_value=outcome)) as playback:
            code, payload = self.run_main(
                "playback",
                "192.168.1.50",
                "--metadata",
                '{"playbackUrl": "http://192.168.1.50:8899/playback/r1.mp4"}',
            )

        self.assertEqual(code, 0)
        self.assertEqual(payload["value"], url)
        self.assertEqual(payload["player"][1], {"retry": 1, "init_timeout": 45, "retry_delay": 10})
        recording = playback.call_args.args[1]
        self.assertEqual(recording.metadata["playbackUrl"], "http://192.168.1.50:8899/playback/r1.mp4")

    def test_ptz_without_capability(self):
        error = CapabilityError("No PTZ capability detected on 192.168.1.50")
        with patch.object(CameraClient, "send_ptz_command", new=AsyncMock(side_effect=error)):
            code, payload = self.run_main("ptz", "192.168.1.50", "move", "--direction", "left")

        self.assertEqual(code, 2)
        self.assertIn("Capability error", payload["error"])

    def test_ptz_override_uses_global_credentials(self):
        with patch.object(CameraClient, "send_ptz_command", new=AsyncMock(return_value=True)) as send:
            code, payload = self.run_main(
                "--username", "operator", "--password", "ptz",
                "ptz", "192.168.1.50", "preset", "--preset", "3", "--override",
            )

        self.assertEqual(code, 0)
        self.assertTrue(payload["sent"])
        camera, command = send.call_args.args
        self.assertEqual(command["preset_number"], 3)
        self.assertEqual(send.call_args.kwargs["override_credentials"].username, "operator")

    def test_discover_without_protocols_is_unreachable(self):
        result = ProtocolDetectionResult(error="No camera protocol answered")
        with patch.object(CameraClient, "discover_device", new=AsyncMock(return_value=result)):
            code, payload = self.run_main("discover", "192.168.1.50")

        self.assertEqual(code, camfetch.EXIT_UNREACHABLE)
        self.assertFalse(payload["detection"]["onvif_available"])

    def test_onvif_fault_exit_code(self):
        fault = Fault("Sender not authorized", code="ter:NotAuthorized")
        with patch.object(CameraClient, "get_live_stream_url", new=AsyncMock(side_effect=fault)):
            code, payload = self.run_main("stream", "192.168.1.50")

        self.assertEqual(code, camfetch.EXIT_ONVIF_FAULT)
        self.assertIn("ONVIF Fault", payload["error"])

    def test_socket_error_exit_code(self):
        with patch.object(CameraClient, "get_live_stream_url", new=AsyncMock(side_effect=ConnectionRefusedError("refused"))):
            code, payload = self.run_main("stream", "192.168.1.50")

        self.assertEqual(code, camfetch.EXIT_UNREACHABLE)

    def test_unexpected_error_exit_code(self):
        with patch.object(CameraClient, "get_live_stream_url", new=AsyncMock(side_effect=RuntimeError("boom"))):
            code, payload = self.run_main("stream", "192.168.1.50")

        self.assertEqual(code, camfetch.EXIT_UNEXPECTED)
        self.assertEqual(payload["error"], "Unexpected Error: boom")

    def test_stream_url_comes_with_player_budget(self):
        url = "rtsp://192.168.1.50:554/Streaming/Channels/101"
        with patch.object(CameraClient, "get_live_stream_url", new=AsyncMock(return_value=url)):
            code, payload = self.run_main("stream", "192.168.1.50")

        self.assertEqual(code, 0)
        self.assertEqual(payload["stream_url"], url)
        self.assertEqual([entry["init_timeout"] for entry in payload["player"]], [30, 45, 60])
        self.assertEqual([entry["retry_delay"] for entry in payload["player"]], [5, 10, 15])

    def test_wsdiscover_lists_devices(self):
        match = OnvifDeviceMatch(
            "192.168.1.64",
            xaddrs=["http://192.168.1.64:8899/onvif/device_service"],
            detection=ProtocolDetectionResult(onvif_available=True, onvif_port=8899),
        )
        with patch.object(CameraClient, "discover_onvif_devices", new=AsyncMock(return_value=[match])) as search:
            code, payload = self.run_main("--timeout", "2", "wsdiscover", "--target", "192.168.1.64")

        self.assertEqual(code, 0)
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["devices"][0]["port"], 8899)
        self.assertTrue(payload["devices"][0]["detection"]["onvif_available"])
        self.assertEqual(search.call_args.kwargs["target"], ("192.168.1.64", 3702))
        self.assertEqual(search.call_args.kwargs["timeout"], 2)
        self.assertTrue(search.call_args.kwargs["detect"])

    def test_wsdiscover_rejects_bad_target(self):
        code, payload = self.run_main("wsdiscover", "--target", "192.168.1.64:99999")
        self.assertEqual(code, 1)

    def test_scan_rejects_bad_port_list(self):
        code, payload = self.run_main("scan", "192.168.1.0/30", "--ports", "80,http")
        self.assertEqual(code, 1)

    def test_scan_passes_explicit_ports(self):
        hosts = [{"host": "192.168.1.1", "open_ports": [554], "phase": "full"}]
        with patch.object(CameraClient, "scan_network", new=AsyncMock(return_value=hosts)) as scan:
            code, payload = self.run_main("scan", "192.168.1.0/30", "--ports", "554,8899")

        self.assertEqual(code, 0)
        self.assertEqual(payload["hosts"], hosts)
        self.assertEqual(scan.call_args.args, ("192.168.1.0/30", [554, 8899]))


if __name__ == "__main__":
    unittest.main()
