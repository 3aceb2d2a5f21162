import unittest
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

from fastapi.testclient import TestClient

from keepsake.app import create_app
from keepsake.config import Settings
from keepsake.errors import ReadError
from keepsake.models import new_id
from keepsake.streaming import ByteWindow, build_etag, parse_range


def _exception_chain(exc):
    while exc is not None:
        yield exc
        exc = exc.__cause__ or exc.__context__


class ParseRangeTests(unittest.TestCase):
    def test_no_header_means_full_content(self):
        self.assertEqual(parse_range(None, 10), ByteWindow(0, 9, False))
        self.assertEqual(parse_range("", 10), ByteWindow(0, 9, False))

    def test_explicit_and_open_ended_ranges(self):
        self.assertEqual(parse_range("bytes=0-3", 10), ByteWindow(0, 3, True))
        self.assertEqual(parse_range("bytes=5-", 10), ByteWindow(5, 9, True))
        self.assertEqual(parse_range("bytes=8-100", 10), ByteWindow(8, 9, True))

    def test_suffix_range_returns_the_tail(self):
        self.assertEqual(parse_range("bytes=-3", 10), ByteWindow(7, 9, True))
        self.assertEqual(parse_range("bytes=-20", 10), ByteWindow(0, 9, True))

    def test_only_first_of_several_ranges_is_used(self):
        self.assertEqual(parse_range("bytes=1-2, 4-5", 10), ByteWindow(1, 2, True))

    def test_malformed_or_unsatisfiable_falls_back_to_full(self):
        full = ByteWindow(0, 9, False)
        for header in ["bytes=12-15", "bytes=5-2", "items=0-1", "bytes=-", "bytes=abc", "bytes=-0"]:
            self.assertEqual(parse_range(header, 10), full, header)

    def test_oversized_numbers_fall_back_to_full(self):
        full = ByteWindow(0, 9, False)
        huge = "9" * 5000
        for header in [f"bytes={huge}-", f"bytes=0-{huge}", f"bytes=-{huge}"]:
            self.assertEqual(parse_range(header, 10), full)

    def test_empty_object(self):
        window = parse_range("bytes=0-5", 0)
        self.assertFalse(window.partial)
        self.assertEqual(window.length, 0)


class StreamingEndpointTests(unittest.TestCase):
    def setUp(self):
        settings = Settings(
            use_in_memory_backends=True, blob_chunk_size=4, blob_read_batch=1
        )
        self.app = create_app(settings)
        self.client = TestClient(self.app)
        self.blobs = self.app.state.services.blobs
        self.data = bytes(range(30))
        self.image = self.blobs.upload_bytes(
            "images", self.data, filename="photo.png", content_type="image/png"
        )

    def test_full_content(self):
        response = self.client.get(f"/moments/media/images/{self.image.object_id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, self.data)
        self.assertEqual(response.headers["content-type"], "image/png")
        self.assertEqual(response.headers["accept-ranges"], "bytes")
        self.assertEqual(response.headers["content-length"], "30")
        self.assertEqual(response.headers["etag"], build_etag(self.image))
        self.assertIn("immutable", response.headers["cache-control"])
        self.assertNotIn("content-range", response.headers)

    def test_partial_content(self):
        response = self.client.get(
            f"/moments/media/images/{self.image.object_id}",
            headers={"Range": "bytes=5-13"},
        )
        self.assertEqual(response.status_code, 206)
        self.assertEqual(response.content, self.data[5:14])
        self.assertEqual(response.headers["content-range"], "bytes 5-13/30")
        self.assertEqual(response.headers["content-length"], "9")

    def test_suffix_range(self):
        response = self.client.get(
            f"/moments/media/images/{self.image.object_id}",
            headers={"Range": "bytes=-4"},
        )
        self.assertEqual(response.status_code, 206)
        self.assertEqual(response.content, self.data[-4:])
        self.assertEqual(response.headers["content-range"], "bytes 26-29/30")

    def test_unsatisfiable_range_serves_everything(self):
        response = self.client.get(
            f"/moments/media/images/{self.image.object_id}",
            headers={"Range": "bytes=100-200"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, self.data)

    def test_oversized_range_number_serves_everything(self):
        response = self.client.get(
            f"/moments/media/images/{self.image.object_id}",
            headers={"Range": "bytes=" + "9" * 5000 + "-"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, self.data)

    def test_if_none_match_returns_not_modified(self):
        url = f"/moments/media/images/{self.image.object_id}"
        etag = self.client.get(url).headers["etag"]
        for _ in range(2):
            response = self.client.get(url, headers={"If-None-Match": etag})
            self.assertEqual(response.status_code, 304)
            self.assertEqual(response.content, b"")
            self.assertEqual(response.headers["etag"], etag)

    def test_if_modified_since(self):
        url = f"/moments/media/images/{self.image.object_id}"
        later = format_datetime(datetime.now(timezone.utc) + timedelta(hours=1), usegmt=True)
        earlier = format_datetime(datetime.now(timezone.utc) - timedelta(days=1), usegmt=True)
        self.assertEqual(
            self.client.get(url, headers={"If-Modified-Since": later}).status_code, 304
        )
        self.assertEqual(
            self.client.get(url, headers={"If-Modified-Since": earlier}).status_code, 200
        )

    def test_if_none_match_takes_precedence(self):
        later = format_datetime(datetime.now(timezone.utc) + timedelta(hours=1), usegmt=True)
        response = self.client.get(
            f"/moments/media/images/{self.image.object_id}",
            headers={"If-None-Match": '"stale"', "If-Modified-Since": later},
        )
        self.assertEqual(response.status_code, 200)

    def test_bad_bucket_or_id(self):
        self.assertEqual(
            self.client.get(f"/moments/media/secrets/{self.image.object_id}").status_code,
            400,
        )
        self.assertEqual(self.client.get("/moments/media/images/not-an-id").status_code, 400)
        self.assertEqual(self.client.get(f"/moments/media/images/{new_id()}").status_code, 404)

    def test_object_in_other_bucket_is_not_found(self):
        response = self.client.get(f"/moments/media/mVideos/{self.image.object_id}")
        self.assertEqual(response.status_code, 404)

    def test_video_stream(self):
        video = self.blobs.upload_bytes(
            "videos", b"0123456789", filename="clip.mp4", content_type="video/mp4"
        )
        response = self.client.get(
            f"/videos/stream/{video.object_id}", headers={"Range": "bytes=0-1"}
        )
        self.assertEqual(response.status_code, 206)
        self.assertEqual(response.content, b"01")
        self.assertEqual(response.headers["content-range"], "bytes 0-1/10")
        self.assertEqual(self.client.get(f"/videos/stream/{new_id()}").status_code, 404)
        self.assertEqual(self.client.get("/videos/stream/xyz").status_code, 400)

    def test_content_type_falls_back_to_filename(self):
        record = self.blobs.upload_bytes("files", b"%PDF", filename="notes.pdf")
        response = self.client.get(f"/moments/media/files/{record.object_id}")
        self.assertEqual(response.headers["content-type"], "application/pdf")

    def test_damaged_first_chunk_is_a_server_error(self):
        handle = self.blobs.registry.get("images")
        del handle.chunks[(self.image.object_id, 0)]
        response = self.client.get(f"/moments/media/images/{self.image.object_id}")
        self.assertEqual(response.status_code, 500)

    def test_damaged_later_chunk_aborts_the_stream(self):
        handle = self.blobs.registry.get("images")
        del handle.chunks[(self.image.object_id, 3)]
        with self.assertLogs("keepsake.streaming", level="ERROR"):
            with self.assertRaises(Exception) as ctx:
                self.client.get(f"/moments/media/images/{self.image.object_id}")
        # The server may wrap the error once headers are out; it must still be the cause.
        self.assertTrue(any(isinstance(e, ReadError) for e in _exception_chain(ctx.exception)))


if __name__ == "__main__":
    unittest.main()
