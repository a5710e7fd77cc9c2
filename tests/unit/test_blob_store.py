import hashlib
import unittest

from fakes import FakeS3Client

from ledgerdrive.blobs import BlobStore, parse_ref, shard_key
from ledgerdrive.errors import BlobStoreError, ConfigurationError, EnvelopeHashMismatch


class BlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.s3 = FakeS3Client()
        self.store = BlobStore(self.s3, "ledgerdrive-blobs")

    def test_shard_key_layout(self):
        digest = hashlib.sha256(b"abc").hexdigest()

        self.assertEqual(shard_key(digest), f"blobs/{digest[:2]}/{digest[2:4]}/{digest}")

    def test_put_and_get(self):
        content_ref, content_hash = self.store.put(b"large payload")

        self.assertEqual(content_hash, hashlib.sha256(b"large payload").hexdigest())
        self.assertEqual(content_ref, f"s3://ledgerdrive-blobs/{shard_key(content_hash)}")
        self.assertEqual(self.store.get(content_ref, expected_hash=content_hash), b"large payload")

    def test_put_is_idempotent(self):
        self.store.put(b"same bytes")
        self.store.put(b"same bytes")

        self.assertEqual(len(self.s3.put_calls), 1)

    def test_get_detects_tampered_blob(self):
        content_ref, content_hash = self.store.put(b"original")
        bucket, key = parse_ref(content_ref)
        self.s3.objects[(bucket, key)] = b"tampered"

        with self.assertRaises(EnvelopeHashMismatch):
            self.store.get(content_ref, expected_hash=content_hash)

    def test_missing_blob(self):
        with self.assertRaises(BlobStoreError):
            self.store.get("s3://ledgerdrive-blobs/blobs/aa/bb/missing")

    def test_unsupported_ref(self):
        with self.assertRaises(BlobStoreError):
            parse_ref("https://example.com/blob")

    def test_invalid_bucket_name(self):
        for name in ("ab", "Upper-Case", "192.168.0.1", "xn--bucket", "bucket-s3alias"):
            with self.subTest(name=name):
                with self.assertRaises(ConfigurationError):
                    BlobStore(self.s3, name)


if __name__ == "__main__":
    unittest.main()
