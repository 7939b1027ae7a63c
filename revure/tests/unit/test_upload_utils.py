import hashlib
import os
import sys
import tempfile
import unittest


os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AWS_S3_BUCKET", "test-bucket")

TEST_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if TEST_ROOT not in sys.path:
    sys.path.insert(0, TEST_ROOT)


from botocore.exceptions import ClientError  # noqa: E402

from api.app.upload_utils import (  # noqa: E402
    calculate_checksums,
    error_code,
    is_retryable,
    md5_base64,
    with_retry,
)


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "PutObject")


class TestChecksums(unittest.TestCase):
    def test_streaming_hashes_match_hashlib(self):
        data = b"revure" * 10000
        with tempfile.NamedTemporaryFile(delete=False) as fh:
            fh.write(data)
        self.addCleanup(os.remove, fh.name)

        checksums = calculate_checksums(fh.name)
        self.assertEqual(checksums.md5, hashlib.md5(data).hexdigest())
        self.assertEqual(checksums.sha256, hashlib.sha256(data).hexdigest())
        self.assertEqual(checksums.size, len(data))

    def test_content_md5_is_base64_of_digest(self):
        # md5("") = d41d8cd98f00b204e9800998ecf8427e
        self.assertEqual(md5_base64("d41d8cd98f00b204e9800998ecf8427e"), "1B2M2Y8AsgTpgAmY7PhCfg==")


class TestRetry(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def test_succeeds_after_transient_failures(self):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise _client_error("SlowDown")
            return "ok"

        result = with_retry(flaky, retries=3, delay=1.0, sleep=self.sleeps.append)
        self.assertEqual(result, "ok")
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_gives_up_after_last_attempt_without_sleeping(self):
        calls = {"n": 0}

        def failing():
            calls["n"] += 1
            raise _client_error("InternalError")

        with self.assertRaises(ClientError):
            with_retry(failing, retries=3, delay=0.5, sleep=self.sleeps.append)
        self.assertEqual(calls["n"], 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_non_retryable_codes_fail_immediately(self):
        for code in ("AccessDenied", "NoSuchBucket"):
            calls = {"n": 0}

            def denied():
                calls["n"] += 1
                raise _client_error(code)

            with self.assertRaises(ClientError):
                with_retry(denied, retries=5, delay=1.0, sleep=self.sleeps.append)
            self.assertEqual(calls["n"], 1)
        self.assertEqual(self.sleeps, [])

    def test_error_code_lookup(self):
        self.assertEqual(error_code(_client_error("NoSuchKey")), "NoSuchKey")
        self.assertIsNone(error_code(ValueError("boom")))
        self.assertTrue(is_retryable(ConnectionError("reset")))
        self.assertFalse(is_retryable(_client_error("AccessDenied")))


if __name__ == "__main__":
    unittest.main()
