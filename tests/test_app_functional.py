import hashlib
import importlib
import io
import logging
import os
import sys
import tempfile
import time
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest import mock
from urllib.parse import parse_qs, urlparse

sys.path.insert(0, str(Path(__file__).parent.parent))

MODULES = ["filedrop.app", "filedrop.lifecycle", "filedrop.storage", "filedrop"]
ENV_KEYS = [
    "FILEDROP_STORAGE_ROOT",
    "FILEDROP_DATA_DIR",
    "FILEDROP_UPLOADS_DIR",
    "FILEDROP_LOGS_DIR",
    "FILEDROP_RATE_LIMIT_UPLOADS",
    "FILEDROP_BASE_URL",
    "FILEDROP_TRUSTED_PROXY_HOPS",
]


class FileDropAppIntegrationTests(unittest.TestCase):
    extra_env = {}

    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["FILEDROP_STORAGE_ROOT"] = str(root)
        os.environ["FILEDROP_DATA_DIR"] = str(root / "data")
        os.environ["FILEDROP_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["FILEDROP_LOGS_DIR"] = str(root / "logs")
        os.environ.update(self.extra_env)
        self.uploads_dir = root / "uploads"
        self._reload_app()
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()

    def tearDown(self):
        self.app_module.cleanup_scheduler.shutdown()
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename.startswith(
                self.storage_dir.name
            ):
                root_logger.removeHandler(handler)
                handler.close()
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        for module in MODULES:
            sys.modules.pop(module, None)

    def _reload_app(self):
        for module in MODULES:
            sys.modules.pop(module, None)
        self.app_module = importlib.import_module("filedrop.app")
        self.app = self.app_module.app
        self.manager = self.app_module.lifecycle_manager
        self.storage = importlib.import_module("filedrop.storage")

    def _upload(self, content=b"hello world", filename="sample.txt", **form):
        data = {"file": (io.BytesIO(content), filename)}
        data.update(form)
        return self.client.post("/api/upload", data=data, content_type="multipart/form-data")

    def _download_target(self, download_url):
        parsed = urlparse(download_url)
        return parsed.path + ("?" + parsed.query if parsed.query else "")


class UploadAndDownloadTests(FileDropAppIntegrationTests):
    def test_upload_and_download_flow(self):
        response = self._upload(duration="1day")
        self.assertEqual(response.status_code, 201)
        payload = response.get_json()
        self.assertTrue(payload["success"])
        data = payload["data"]
        self.assertEqual(data["originalName"], "sample.txt")
        self.assertEqual(data["size"], 11)
        self.assertEqual(data["extension"], ".txt")
        self.assertEqual(data["duration"], "1day")
        self.assertTrue(data["expiresAt"].endswith("Z"))

        parsed = urlparse(data["downloadUrl"])
        self.assertEqual(parsed.path, f"/api/download/{data['id']}")
        self.assertIn("sig", parse_qs(parsed.query))

        download = self.client.get(self._download_target(data["downloadUrl"]))
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b"hello world")
        self.assertIn("attachment", download.headers.get("Content-Disposition", ""))
        self.assertIn("sample.txt", download.headers.get("Content-Disposition", ""))
        download.close()

        stored = list(self.uploads_dir.iterdir())
        self.assertEqual([path.name for path in stored], [f"{data['id']}_sample.txt"])

    def test_default_duration_is_seven_days(self):
        response = self._upload()
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["data"]["duration"], "7days")
        record = self.manager.registry.get(response.get_json()["data"]["id"])
        self.assertAlmostEqual(record.expires_at - record.created_at, 7 * 86400, delta=1)

    def test_unlimited_upload_has_no_expiry(self):
        response = self._upload(duration="unlimited")
        self.assertEqual(response.status_code, 201)
        self.assertIsNone(response.get_json()["data"]["expiresAt"])

    def test_download_without_signature_is_accepted(self):
        file_id = self._upload().get_json()["data"]["id"]
        download = self.client.get(f"/api/download/{file_id}")
        self.assertEqual(download.status_code, 200)
        download.close()

    def test_tampered_signature_is_rejected(self):
        file_id = self._upload().get_json()["data"]["id"]
        other_id = self._upload(filename="other.txt").get_json()["data"]["id"]
        other_sig = self.app_module.sign_file_id(other_id)

        for sig in ["garbage", other_sig]:
            with self.subTest(sig=sig):
                response = self.client.get(f"/api/download/{file_id}?sig={sig}")
                self.assertEqual(response.status_code, 404)
                self.assertEqual(response.get_json()["code"], "FILE_NOT_FOUND")

    def test_describe_returns_metadata_with_hash(self):
        file_id = self._upload(content=b"abc", filename="a.csv").get_json()["data"]["id"]
        response = self.client.get(f"/api/files/{file_id}")
        self.assertEqual(response.status_code, 200)
        data = response.get_json()["data"]
        self.assertEqual(data["hash"], hashlib.sha256(b"abc").hexdigest())
        self.assertEqual(data["fileName"], f"{file_id}_a.csv")
        self.assertNotIn("storagePath", data)

    def test_base_url_override_is_used_for_links(self):
        config = self.app_module.get_config()
        config = dict(config, base_url="https://files.example.com/")
        self.storage.save_config(config)
        self.app_module.get_config(refresh=True)

        data = self._upload().get_json()["data"]
        self.assertTrue(data["downloadUrl"].startswith("https://files.example.com/api/download/"))


class UploadValidationTests(FileDropAppIntegrationTests):
    def test_missing_file_part(self):
        response = self.client.post("/api/upload", data={"duration": "1day"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "NO_FILE")

    def test_invalid_duration(self):
        response = self._upload(duration="2weeks")
        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload["code"], "INVALID_DURATION")
        self.assertIn("unlimited", payload["allowedDurations"])

    def test_invalid_file_type(self):
        response = self._upload(filename="virus.exe")
        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload["code"], "INVALID_FILE_TYPE")
        self.assertIn(".pdf", payload["allowedTypes"])

    def test_empty_file(self):
        response = self._upload(content=b"")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "EMPTY_FILE")

    def test_file_too_large(self):
        self.manager.max_file_size = 8
        response = self._upload(content=b"x" * 16)
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.get_json()["code"], "FILE_TOO_LARGE")
        self.assertEqual(list(self.uploads_dir.iterdir()), [])


class ExpiryTests(FileDropAppIntegrationTests):
    def test_expired_download_returns_gone_then_not_found(self):
        data = self._upload(duration="1hour").get_json()["data"]
        target = self._download_target(data["downloadUrl"])
        self.manager.clock = lambda: time.time() + 7200

        first = self.client.get(target)
        self.assertEqual(first.status_code, 410)
        self.assertEqual(first.get_json()["code"], "FILE_EXPIRED")

        second = self.client.get(target)
        self.assertEqual(second.status_code, 404)
        self.assertEqual(list(self.uploads_dir.iterdir()), [])

    def test_missing_bytes_yield_not_found(self):
        data = self._upload().get_json()["data"]
        for path in self.uploads_dir.iterdir():
            path.unlink()

        response = self.client.get(f"/api/files/{data['id']}")
        self.assertEqual(response.status_code, 404)
        self.assertIsNone(self.manager.registry.get(data["id"]))


class ListingTests(FileDropAppIntegrationTests):
    def test_list_paginates(self):
        for index in range(3):
            self.assertEqual(self._upload(filename=f"f{index}.txt").status_code, 201)

        response = self.client.get("/api/list?limit=2")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(len(payload["data"]), 2)
        self.assertEqual(
            payload["pagination"], {"page": 1, "limit": 2, "total": 3, "totalPages": 2}
        )

        second = self.client.get("/api/list?limit=2&page=2").get_json()
        self.assertEqual(len(second["data"]), 1)

    def test_list_clamps_query_values(self):
        self._upload()
        payload = self.client.get("/api/list?limit=500&page=0").get_json()
        self.assertEqual(payload["pagination"]["limit"], 100)
        self.assertEqual(payload["pagination"]["page"], 1)
        self.assertEqual(len(payload["data"]), 1)

    def test_list_hides_expired_files(self):
        self._upload(filename="short.txt", duration="1hour")
        self._upload(filename="long.txt", duration="30days")
        self.manager.clock = lambda: time.time() + 7200

        payload = self.client.get("/api/list").get_json()
        self.assertEqual([item["originalName"] for item in payload["data"]], ["long.txt"])

    def test_list_filters_by_extension(self):
        self._upload(filename="a.txt")
        self._upload(filename="b.csv")
        payload = self.client.get("/api/list?extension=csv").get_json()
        self.assertEqual([item["originalName"] for item in payload["data"]], ["b.csv"])

    def test_list_reads_config_once_per_request(self):
        for index in range(3):
            self._upload(filename=f"f{index}.txt")

        with mock.patch.object(
            self.app_module, "get_config", wraps=self.app_module.get_config
        ) as get_config:
            payload = self.client.get("/api/list").get_json()

        self.assertEqual(len(payload["data"]), 3)
        self.assertEqual(get_config.call_count, 1)


class RateLimitTests(FileDropAppIntegrationTests):
    extra_env = {"FILEDROP_RATE_LIMIT_UPLOADS": "2"}

    def test_upload_rate_limit(self):
        self.assertEqual(self._upload().status_code, 201)
        self.assertEqual(self._upload().status_code, 201)
        response = self._upload()
        self.assertEqual(response.status_code, 429)
        payload = response.get_json()
        self.assertEqual(payload["code"], "RATE_LIMIT_EXCEEDED")
        self.assertFalse(payload["success"])

    def test_downloads_are_not_rate_limited(self):
        file_id = self._upload().get_json()["data"]["id"]
        for _ in range(5):
            response = self.client.get(f"/api/files/{file_id}")
            self.assertEqual(response.status_code, 200)

    def test_rate_limit_key_order(self):
        forwarded = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
        cases = [
            ({"REMOTE_ADDR": "10.0.0.5"}, forwarded, "10.0.0.5"),
            ({"REMOTE_ADDR": ""}, forwarded, "203.0.113.9"),
            ({"REMOTE_ADDR": ""}, {}, self.app_module.RATE_LIMIT_FALLBACK_KEY),
        ]
        for environ, headers, expected in cases:
            with self.subTest(environ=environ, headers=headers):
                with self.app.test_request_context(
                    "/api/upload", environ_base=environ, headers=headers
                ):
                    self.assertEqual(self.app_module.rate_limit_key(), expected)


class TrustedProxyTests(FileDropAppIntegrationTests):
    extra_env = {"FILEDROP_RATE_LIMIT_UPLOADS": "1", "FILEDROP_TRUSTED_PROXY_HOPS": "1"}

    def _upload_from(self, client_ip):
        return self.client.post(
            "/api/upload",
            data={"file": (io.BytesIO(b"hello"), "a.txt")},
            content_type="multipart/form-data",
            headers={"X-Forwarded-For": client_ip},
        )

    def test_clients_behind_proxy_get_separate_buckets(self):
        self.assertEqual(self._upload_from("198.51.100.1").status_code, 201)
        self.assertEqual(self._upload_from("198.51.100.2").status_code, 201)
        self.assertEqual(self._upload_from("198.51.100.1").status_code, 429)


class OperationalTests(FileDropAppIntegrationTests):
    def test_health_check(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "healthy")
        self.assertTrue(payload["checks"]["scheduler_running"])
        self.assertEqual(payload["checks"]["cleanup"], "scheduled")
        self.assertEqual(payload["checks"]["storage"]["records"], 0)

    def test_request_id_is_echoed(self):
        response = self.client.get("/health", headers={"X-Request-ID": "abc123"})
        self.assertEqual(response.headers.get("X-Request-ID"), "abc123")
        self.assertEqual(response.headers.get("X-Content-Type-Options"), "nosniff")

    def test_unknown_route_returns_json(self):
        response = self.client.get("/api/nope")
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()["success"])

    def test_startup_reclaims_files_from_previous_process(self):
        self.app_module.cleanup_scheduler.shutdown()
        leftover = self.uploads_dir / "0123abcd_leftover.txt"
        leftover.write_bytes(b"old")
        an_hour_ago = time.time() - 3600
        os.utime(leftover, (an_hour_ago, an_hour_ago))

        self._reload_app()

        self.assertFalse(leftover.exists())


if __name__ == "__main__":
    unittest.main()
