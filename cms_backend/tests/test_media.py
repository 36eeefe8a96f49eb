import tempfile
import unittest
from unittest.mock import patch

from botocore.exceptions import ClientError

from cms_backend.clock import FixedClock
from cms_backend.errors import StorageError
from cms_backend.media import (
    IncomingFile,
    MediaType,
    MediaUploader,
    file_extension,
)
from cms_backend.storage import InMemoryStorageClient, LocalStorageClient, S3StorageClient


class MediaTypeTests(unittest.TestCase):
    def test_classification(self):
        self.assertEqual(MediaType.from_content_type("image/png"), MediaType.IMAGE)
        self.assertEqual(MediaType.from_content_type("video/mp4"), MediaType.VIDEO)
        self.assertEqual(
            MediaType.from_content_type("application/pdf"), MediaType.DOCUMENT
        )
        self.assertEqual(
            MediaType.from_content_type(
                "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
            ),
            MediaType.DOCUMENT,
        )
        self.assertEqual(MediaType.from_content_type("text/plain"), MediaType.OTHER)

    def test_file_extension(self):
        self.assertEqual(file_extension("Photo.JPG", "image/jpeg"), "jpg")
        self.assertEqual(file_extension("blob", "image/webp"), "webp")
        self.assertEqual(file_extension("archive.verylong", "application/zip"), "zip")
        self.assertEqual(file_extension("blob", "text/unknown"), "bin")


class MediaUploaderTests(unittest.TestCase):
    def setUp(self):
        self.storage = InMemoryStorageClient()
        self.uploader = MediaUploader(self.storage, FixedClock())

    def test_upload_image(self):
        result = self.uploader.upload_image(b"png-bytes", "logo.png", "image/png")
        self.assertEqual(result.path, f"images/img-{result.file_id}.png")
        self.assertEqual(result.file_type, MediaType.IMAGE)
        self.assertEqual(self.storage.get_bytes(result.path), b"png-bytes")
        self.assertEqual(result.url, f"https://example.test/storage/{result.path}")

    def test_upload_file_paths_by_type(self):
        report = self.uploader.upload_file(b"%PDF", "report.pdf", "application/pdf")
        video = self.uploader.upload_file(b"vid", "day.mp4", "video/mp4")
        other = self.uploader.upload_file(b"txt", "notes.txt", "text/plain")

        self.assertEqual(report.path, f"reports/2024/{report.file_id}.pdf")
        self.assertEqual(video.path, f"events/2024/{video.file_id}.mp4")
        self.assertEqual(other.path, f"docs/{other.file_id}.txt")
        self.assertEqual(other.as_dict()["file_type"], "other")

    def test_upload_many_routes_images(self):
        results = self.uploader.upload_many(
            [
                IncomingFile("a.png", "image/png", b"a"),
                IncomingFile("b.pdf", "application/pdf", b"b"),
            ]
        )
        self.assertEqual(
            [r.file_type for r in results], [MediaType.IMAGE, MediaType.DOCUMENT]
        )
        self.assertEqual(len(self.storage.stored_objects), 2)


class LocalStorageClientTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.storage = LocalStorageClient(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_put_get_list_delete(self):
        self.storage.put_bytes("images/a.png", b"a")
        self.storage.put_bytes("docs/b.txt", b"bb")
        self.assertEqual(self.storage.get_bytes("images/a.png"), b"a")
        self.assertEqual(
            [(o.path, o.size) for o in self.storage.list_objects("images/")],
            [("images/a.png", 1)],
        )
        self.storage.delete("images/a.png")
        with self.assertRaises(FileNotFoundError):
            self.storage.get_bytes("images/a.png")

    def test_rejects_paths_outside_root(self):
        with self.assertRaises(StorageError):
            self.storage.put_bytes("../escape.txt", b"x")

    def test_public_url(self):
        self.assertEqual(
            self.storage.public_url("images/a.png"),
            "http://localhost:3001/uploads/images/a.png",
        )


class S3StorageClientTests(unittest.TestCase):
    def setUp(self):
        patcher = patch("cms_backend.storage.boto3.client")
        self.client_factory = patcher.start()
        self.addCleanup(patcher.stop)
        self.s3 = self.client_factory.return_value
        self.storage = S3StorageClient(
            bucket="media",
            region="auto",
            endpoint="https://r2.example.com",
            access_key_id="key",
            secret_access_key="secret",
            media_domain="media.llacademy.ng",
        )

    def test_put_bytes(self):
        self.storage.put_bytes("images/a.png", b"a", content_type="image/png")
        self.s3.put_object.assert_called_once_with(
            Bucket="media", Key="images/a.png", Body=b"a", ContentType="image/png"
        )

    def test_missing_object(self):
        self.s3.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )
        with self.assertRaises(FileNotFoundError):
            self.storage.get_bytes("nope")

    def test_upload_failure_is_storage_error(self):
        self.s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        with self.assertRaises(StorageError):
            self.storage.put_bytes("a", b"a")

    def test_public_url_uses_media_domain(self):
        self.assertEqual(
            self.storage.public_url("images/a.png"),
            "https://media.llacademy.ng/images/a.png",
        )

    def test_public_url_without_media_domain_is_presigned(self):
        self.storage.media_domain = None
        self.s3.generate_presigned_url.return_value = "https://signed.example/a"
        self.assertEqual(
            self.storage.public_url("images/a.png"), "https://signed.example/a"
        )
        self.s3.generate_presigned_url.assert_called_once_with(
            ClientMethod="get_object",
            Params={"Bucket": "media", "Key": "images/a.png"},
            ExpiresIn=3600,
        )


if __name__ == "__main__":
    unittest.main()
