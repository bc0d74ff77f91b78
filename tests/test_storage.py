import re
import unittest
from unittest.mock import MagicMock, patch

from storage import ImageStore, extension_for, make_storage_key


class TestKeys(unittest.TestCase):
    def test_extension_for(self):
        self.assertEqual(extension_for("image/png"), "png")
        self.assertEqual(extension_for("image/jpeg"), "jpeg")
        self.assertEqual(extension_for("image/svg+xml"), "svg")
        self.assertEqual(extension_for(None), "bin")
        self.assertEqual(extension_for("garbage"), "bin")

    def test_key_shape(self):
        key = make_storage_key("problem", "image/png")
        self.assertRegex(key, r"^problems/problem-\d{13}-[0-9a-f]{16}\.png$")

    def test_keys_are_unique(self):
        keys = {make_storage_key("solution", "image/jpeg") for _ in range(50)}
        self.assertEqual(len(keys), 50)


class TestImageStore(unittest.TestCase):
    def setUp(self):
        self.bucket = MagicMock()
        self.blob = self.bucket.blob.return_value
        self.blob.public_url = "https://storage.googleapis.com/b/problems/x.png"
        patcher = patch("storage.firebase_storage.bucket", return_value=self.bucket)
        self.bucket_factory = patcher.start()
        self.addCleanup(patcher.stop)

    def test_put_uploads_and_publishes(self):
        store = ImageStore("stepwise-test")

        url = store.put("problems/x.png", b"\x89PNG", "image/png")

        self.bucket_factory.assert_called_once_with("stepwise-test")
        self.bucket.blob.assert_called_once_with("problems/x.png")
        self.blob.upload_from_string.assert_called_once_with(b"\x89PNG", content_type="image/png")
        self.blob.make_public.assert_called_once()
        self.assertEqual(url, "https://storage.googleapis.com/b/problems/x.png")

    def test_put_upload_returns_url_and_key(self):
        store = ImageStore()

        url, key = store.put_upload("solution", b"data", None)

        self.assertEqual(url, self.blob.public_url)
        self.assertTrue(re.match(r"^problems/solution-\d+-[0-9a-f]{16}\.bin$", key))
        self.blob.upload_from_string.assert_called_once_with(b"data", content_type="application/octet-stream")

    def test_bucket_is_resolved_once(self):
        store = ImageStore("b")
        store.put("k1", b"1", "image/png")
        store.put("k2", b"2", "image/png")
        self.bucket_factory.assert_called_once()


if __name__ == "__main__":
    unittest.main()
