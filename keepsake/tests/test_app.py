import json
import unittest

from fastapi.testclient import TestClient

from keepsake.app import create_app
from keepsake.config import Settings
from keepsake.models import new_id


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.app = create_app(Settings(use_in_memory_backends=True))
        self.client = TestClient(self.app)
        self.services = self.app.state.services

    def create_image_moment(self, title: str = "Sunset", data: bytes = b"png-bytes"):
        response = self.client.post(
            "/moments/create",
            data={"type": "image", "title": title, "date": "2024-03-01", "tags": ["sea", "sky"]},
            files={"file": ("sunset.png", data, "image/png")},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    # Moments

    def test_create_list_and_stream_image_moment(self):
        created = self.create_image_moment()
        self.assertEqual(created["type"], "image")
        self.assertEqual(created["tags"], ["sea", "sky"])
        self.assertNotIn("body", created)
        self.assertEqual(created["mediaUrlAbsolute"], "http://testserver" + created["mediaUrl"])

        listing = self.client.post(
            "/moments/list", json={}, headers={"X-Forwarded-Proto": "https"}
        )
        self.assertEqual(listing.status_code, 200)
        payload = listing.json()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["page"], 1)
        self.assertEqual(payload["pageSize"], 1)
        self.assertEqual(payload["total"], 1)
        self.assertFalse(payload["hasNext"])
        item = payload["data"][0]
        object_id = created["media"]["objectId"]
        self.assertEqual(item["mediaUrl"], f"/moments/media/images/{object_id}")
        self.assertEqual(
            item["mediaUrlAbsolute"], f"https://testserver/moments/media/images/{object_id}"
        )

        media = self.client.get(item["mediaUrl"])
        self.assertEqual(media.status_code, 200)
        self.assertEqual(media.content, b"png-bytes")

    def test_create_text_moment_with_json_tags_and_meta(self):
        response = self.client.post(
            "/moments/create",
            data={
                "type": "note",
                "title": "Thoughts",
                "date": "2024-03-02T10:00:00Z",
                "body": "Dear diary",
                "tags": json.dumps(["a", "b"]),
                "meta": json.dumps({"mood": "calm"}),
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        data = response.json()["data"]
        self.assertEqual(data["body"], "Dear diary")
        self.assertEqual(data["tags"], ["a", "b"])
        self.assertEqual(data["meta"], {"mood": "calm"})

    def test_create_errors_use_common_body(self):
        response = self.client.post("/moments/create", data={"type": "image", "title": "x"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(), {"success": False, "message": "type, title, date are required"}
        )

        response = self.client.post(
            "/moments/create",
            data={"type": "image", "title": "x", "date": "2024-01-01"},
            files={"file": ("a.txt", b"text", "text/plain")},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Unsupported content type for media")

    def test_update_moment_replaces_media(self):
        created = self.create_image_moment(data=b"first")
        old_id = created["media"]["objectId"]
        response = self.client.post(
            "/moments/update",
            data={"id": created["id"], "title": "Sunrise"},
            files={"file": ("sunrise.png", b"second", "image/png")},
        )
        self.assertEqual(response.status_code, 200, response.text)
        updated = response.json()["data"]
        self.assertEqual(updated["title"], "Sunrise")
        self.assertNotEqual(updated["media"]["objectId"], old_id)
        self.assertEqual(updated["mediaUrlAbsolute"], "http://testserver" + updated["mediaUrl"])
        self.assertEqual(self.client.get(f"/moments/media/images/{old_id}").status_code, 404)
        self.assertEqual(self.client.get(updated["mediaUrl"]).content, b"second")

    def test_update_moment_errors(self):
        response = self.client.post("/moments/update", data={"id": "bad", "title": "x"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Invalid id")
        response = self.client.post("/moments/update", data={"id": new_id(), "title": "x"})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"success": False, "message": "Moment not found"})

    def test_delete_and_delete_many_moments(self):
        first = self.create_image_moment("one")
        second = self.create_image_moment("two")
        third = self.create_image_moment("three")

        response = self.client.post("/moments/delete", json={"id": first["id"]})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.post("/moments/delete", json={"id": first["id"]}).status_code, 404)

        response = self.client.post(
            "/moments/deleteMany", json={"ids": [second["id"], third["id"]]}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 2)
        self.assertEqual(self.services.blobs.count("images"), 0)

        self.assertEqual(self.client.post("/moments/deleteMany", json={"ids": []}).status_code, 400)

    def test_list_moments_pagination(self):
        for day in range(1, 6):
            self.client.post(
                "/moments/create",
                data={"type": "note", "title": f"n{day}", "date": f"2024-01-0{day}"},
            )
        page = self.client.post("/moments/list", json={"page": 2, "limit": 2}).json()
        self.assertEqual([m["title"] for m in page["data"]], ["n3", "n2"])
        self.assertTrue(page["hasNext"])
        everything = self.client.post("/moments/list", json={"limit": "all"}).json()
        self.assertEqual(everything["pageSize"], 5)
        oldest = self.client.post(
            "/moments/list", json={"sort": "asc", "from": "2024-01-04"}
        ).json()
        self.assertEqual([m["title"] for m in oldest["data"]], ["n4", "n5"])

    def test_list_tolerates_non_finite_paging_values(self):
        self.client.post(
            "/moments/create", data={"type": "note", "title": "n", "date": "2024-01-01"}
        )
        for body in ['{"page": Infinity}', '{"limit": 1e999}', '{"page": -Infinity, "limit": NaN}']:
            response = self.client.post(
                "/moments/list", content=body, headers={"Content-Type": "application/json"}
            )
            self.assertEqual(response.status_code, 200, body)
            self.assertEqual(response.json()["total"], 1)
        response = self.client.post(
            "/videos/list", content='{"page": Infinity}', headers={"Content-Type": "application/json"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["page"], 1)

    def test_invalid_list_date_is_rejected(self):
        response = self.client.post("/moments/list", json={"from": "yesterday"})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

    # Videos

    def test_video_library_flow(self):
        response = self.client.post(
            "/videos/create",
            files={"video": ("trip.mp4", b"0123456789", "video/mp4")},
        )
        self.assertEqual(response.status_code, 201, response.text)
        video = response.json()["file"]
        self.assertEqual(video["filename"], "trip.mp4")
        self.assertEqual(video["length"], 10)

        listing = self.client.post("/videos/list", json={"limit": 5}).json()
        self.assertEqual(listing["total"], 1)
        self.assertEqual(listing["data"][0]["id"], video["id"])

        response = self.client.post(
            "/videos/update",
            data={"id": video["id"], "filename": "road-trip.mp4", "metadata": json.dumps({"year": 2024})},
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["file"]["filename"], "road-trip.mp4")
        self.assertEqual(response.json()["file"]["metadata"]["year"], 2024)

        response = self.client.post("/videos/update", data={"id": video["id"]})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Nothing to update")

        stream = self.client.get(f"/videos/stream/{video['id']}", headers={"Range": "bytes=2-4"})
        self.assertEqual(stream.status_code, 206)
        self.assertEqual(stream.content, b"234")

        self.assertEqual(self.client.post("/videos/delete", json={"id": video["id"]}).status_code, 200)
        response = self.client.post("/videos/delete", json={"id": video["id"]})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["message"], "Video not found")

    def test_video_create_requires_file(self):
        response = self.client.post("/videos/create", data={"filename": "x.mp4"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "No video file uploaded")

    def test_video_replace_content(self):
        video = self.client.post(
            "/videos/create", files={"video": ("a.mp4", b"old", "video/mp4")}
        ).json()["file"]
        response = self.client.post(
            "/videos/update",
            data={"id": video["id"]},
            files={"video": ("b.mp4", b"new!", "video/mp4")},
        )
        replaced = response.json()["file"]
        self.assertNotEqual(replaced["id"], video["id"])
        self.assertEqual(self.client.get(f"/videos/stream/{video['id']}").status_code, 404)
        self.assertEqual(self.client.get(f"/videos/stream/{replaced['id']}").content, b"new!")

    def test_delete_many_videos(self):
        ids = [
            self.client.post("/videos/create", files={"video": ("a.mp4", b"x", "video/mp4")}).json()["file"]["id"]
            for _ in range(2)
        ]
        response = self.client.post("/videos/deleteMany", json={"ids": ids + [new_id()]})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 2)

    # Poems, gallery, home cards, counts

    def test_poem_crud(self):
        response = self.client.post(
            "/poems/create", json={"title": " Rain ", "lines": ["drip", " ", "drop "]}
        )
        self.assertEqual(response.status_code, 201)
        poem = response.json()["data"]
        self.assertEqual(poem, {"id": poem["id"], "title": "Rain", "lines": ["drip", "drop"]})

        bad = self.client.post("/poems/create", json={"title": "Empty", "lines": []})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["message"], "Title and at least one line are required")

        updated = self.client.post("/poems/update", json={"id": poem["id"], "title": "Storm"})
        self.assertEqual(updated.json()["data"]["lines"], ["drip", "drop"])
        self.assertEqual(updated.json()["data"]["title"], "Storm")

        listing = self.client.post("/poems/list").json()
        self.assertEqual(len(listing["data"]), 1)

        self.assertEqual(self.client.post("/poems/delete", json={"id": poem["id"]}).status_code, 200)
        self.assertEqual(self.client.post("/poems/delete", json={"id": poem["id"]}).status_code, 404)
        self.assertEqual(self.client.post("/poems/deleteMany", json={"ids": []}).status_code, 400)

    def test_gallery_crud(self):
        created = [
            self.client.post(
                "/gallery/create",
                json={"src": f"https://img/{i}.jpg", "title": f"t{i}", "caption": "c"},
            ).json()["data"]
            for i in range(3)
        ]
        listing = self.client.post("/gallery/list", json={"limit": 2}).json()
        self.assertEqual(listing["count"], 2)
        self.assertEqual(self.client.post("/gallery/list", json={}).json()["count"], 3)

        updated = self.client.post(
            "/gallery/update", json={"id": created[0]["id"], "caption": "new caption"}
        ).json()["data"]
        self.assertEqual(updated["caption"], "new caption")
        self.assertEqual(updated["src"], "https://img/0.jpg")

        deleted = self.client.post("/gallery/delete", json={"id": created[0]["id"]})
        self.assertEqual(deleted.json()["data"]["id"], created[0]["id"])
        response = self.client.post(
            "/gallery/delete-many", json={"ids": [created[1]["id"], created[2]["id"]]}
        )
        self.assertEqual(response.json()["message"], "2 images deleted")

        missing = self.client.post("/gallery/create", json={"src": "x"})
        self.assertEqual(missing.status_code, 400)

    def test_home_cards(self):
        card = {"href": "/poems", "title": "Poems", "desc": "Words", "icon": "feather"}
        created = self.client.post("/home-cards/create", json=card).json()
        self.assertEqual(created["title"], "Poems")
        cards = self.client.post("/home-cards/list").json()
        self.assertEqual([c["id"] for c in cards], [created["id"]])

    def test_counts(self):
        self.client.post("/poems/create", json={"title": "p", "lines": ["l"]})
        self.client.post(
            "/gallery/create",
            json={"src": "https://img/hero.jpg", "title": "mj_smile", "caption": "hero"},
        )
        self.create_image_moment()
        self.client.post("/videos/create", files={"video": ("a.mp4", b"x", "video/mp4")})

        counts = self.client.post("/counts/list").json()
        self.assertEqual(
            counts,
            {
                "poems": 1,
                "galleries": 1,
                "moments": 1,
                "videos": 1,
                "heroImg": "https://img/hero.jpg",
            },
        )

    def test_unknown_route_uses_common_error_body(self):
        response = self.client.post("/nowhere")
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])


class PrefixedApiTests(unittest.TestCase):
    def test_moment_responses_carry_prefixed_absolute_urls(self):
        client = TestClient(create_app(Settings(use_in_memory_backends=True, api_prefix="/api")))
        response = client.post(
            "/api/moments/create",
            data={"type": "image", "title": "t", "date": "2024-03-01"},
            files={"file": ("a.png", b"png", "image/png")},
            headers={"X-Forwarded-Proto": "https"},
        )
        self.assertEqual(response.status_code, 201, response.text)
        created = response.json()["data"]
        self.assertEqual(
            created["mediaUrlAbsolute"], "https://testserver/api" + created["mediaUrl"]
        )

        response = client.post("/api/moments/update", data={"id": created["id"], "title": "u"})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(
            response.json()["data"]["mediaUrlAbsolute"],
            "http://testserver/api" + created["mediaUrl"],
        )


class SqlBackendApiTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(create_app(Settings(database_url="sqlite+pysqlite:///:memory:")))

    def test_far_away_page_is_empty(self):
        self.client.post(
            "/moments/create", data={"type": "note", "title": "n", "date": "2024-01-01"}
        )
        self.client.post("/videos/create", files={"video": ("v.mp4", b"0123", "video/mp4")})
        for path in ["/moments/list", "/videos/list"]:
            response = self.client.post(path, json={"page": 10**20, "limit": 5})
            self.assertEqual(response.status_code, 200, path)
            payload = response.json()
            self.assertEqual(payload["data"], [])
            self.assertEqual(payload["total"], 1)
            self.assertFalse(payload["hasNext"])


if __name__ == "__main__":
    unittest.main()
