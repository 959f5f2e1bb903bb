"""Tests for the product inspection API.

These tests exercise product/component/photo CRUD, soft detachment on
product delete, history access control and both report export paths.
Storage is pointed at a temporary directory before the app is imported.

Copyright (c) Bryn Gwalad 2025
"""

# Ensure the project root is on sys.path so tests can be executed directly from
# the `tests/` directory (e.g. `python test_api.py`) and still import the
# `api` package.
import os
import sys
import tempfile
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

_TMP = tempfile.mkdtemp(prefix="inspection-api-tests-")
os.environ.setdefault("SQLITE_FILE", os.path.join(_TMP, "test.db"))
os.environ.setdefault("UPLOAD_DIR", os.path.join(_TMP, "uploads"))
os.environ.setdefault("EXPORT_DIR", os.path.join(_TMP, "exports"))
os.environ["USE_GOOGLE_DRIVE"] = "0"

import asyncio
import base64
import unittest
from datetime import datetime
from io import BytesIO
from unittest import mock
from urllib.parse import unquote

from docx import Document
from fastapi.testclient import TestClient
from PIL import Image
from sqlmodel import select

import api.main as api_main
from api.main import app
from api.models import ComponentTest, ProductPhoto
from utils.database import get_session

DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def png_bytes(width=32, height=24, color=(10, 120, 200)):
    buf = BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


def data_uri(data):
    return "data:image/png;base64," + base64.b64encode(data).decode("ascii")


class ProductInspectionAPITest(unittest.TestCase):
    """Unittests for the product inspection API. Using unittest lets you run
    all tests together (python -m unittest) or still run them via pytest.
    """

    @classmethod
    def setUpClass(cls):
        cls.client = TestClient(app)

    def _create_product(self, inventory_id="INV-100", name="Widget  Pro", components=(), photos=(), **extra):
        payload = {
            "inventory_id": inventory_id,
            "name": name,
            "description": "Test bench unit",
            "price": 49.99,
            "components": list(components),
            "photos": list(photos),
        }
        payload.update(extra)
        resp = self.client.post("/products/", json=payload, headers={"X-User-Id": "tester"})
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_create_and_list_products(self):
        first = self._create_product("INV-LIST-1", "First", components=["Fan", "Motor"])
        second = self._create_product("INV-LIST-2", "Second")

        resp = self.client.get("/products/")
        self.assertEqual(resp.status_code, 200)
        ids = [p["id"] for p in resp.json()]
        # most recently updated first
        self.assertLess(ids.index(second["id"]), ids.index(first["id"]))

        # touching a component moves its product back to the top
        comps = self.client.get(f"/products/{first['id']}/components").json()
        self.assertEqual([c["name"] for c in comps], ["Fan", "Motor"])
        self.assertTrue(all(c["status"] == "untested" and c["tested_at"] is None for c in comps))
        resp = self.client.patch(f"/components/{comps[0]['id']}", json={"notes": "dusty"})
        self.assertEqual(resp.status_code, 200)
        ids = [p["id"] for p in self.client.get("/products/").json()]
        self.assertLess(ids.index(first["id"]), ids.index(second["id"]))

        resp = self.client.get("/products/", params={"inventory_id": "INV-LIST-2"})
        self.assertEqual([p["id"] for p in resp.json()], [second["id"]])

    def test_create_product_validation(self):
        resp = self.client.post("/products/", json={"inventory_id": "X", "name": "", "price": 1})
        self.assertEqual(resp.status_code, 422)
        resp = self.client.post("/products/", json={"inventory_id": "X", "name": "Y", "price": -1})
        self.assertEqual(resp.status_code, 422)

    def test_search_by_inventory_id(self):
        created = self._create_product("INV-SEARCH-1", "Searchable")

        resp = self.client.get("/products/search", params={"inventory_id": "INV-SEARCH-1"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["id"], created["id"])

        resp = self.client.get("/products/search", params={"inventory_id": "NOPE"})
        self.assertEqual(resp.status_code, 404)

    def test_component_status_notes_and_stats(self):
        created = self._create_product("INV-COMP-1", "Radio", components=["Tuner", "Speaker", "Dial"])
        comps = self.client.get(f"/products/{created['id']}/components").json()

        resp = self.client.patch(f"/components/{comps[0]['id']}", json={"status": "working"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "working")
        self.assertIsNotNone(resp.json()["tested_at"])

        resp = self.client.patch(f"/components/{comps[1]['id']}", json={"status": "not-working", "notes": "crackles"})
        self.assertEqual(resp.json()["notes"], "crackles")

        resp = self.client.patch(f"/components/{comps[2]['id']}", json={"status": "exploded"})
        self.assertEqual(resp.status_code, 422)
        resp = self.client.patch(f"/components/{comps[2]['id']}", json={})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.patch("/components/999999", json={"notes": "x"})
        self.assertEqual(resp.status_code, 404)

        resp = self.client.post(f"/products/{created['id']}/components", json={"name": "Antenna"})
        self.assertEqual(resp.status_code, 200)

        stats = self.client.get(f"/products/{created['id']}/stats").json()
        self.assertEqual(stats, {"working": 1, "not_working": 1, "untested": 2, "total": 4})

    def test_delete_product_detaches_components_and_deletes_photos(self):
        created = self._create_product(
            "INV-DEL-1", "Doomed", components=["Lid", "Hinge"], photos=[data_uri(png_bytes())]
        )
        product_id = created["id"]
        component_ids = [c["id"] for c in self.client.get(f"/products/{product_id}/components").json()]
        photo_ids = [p["id"] for p in self.client.get(f"/products/{product_id}/photos").json()]
        self.assertEqual(len(photo_ids), 1)

        resp = self.client.delete(f"/products/{product_id}", headers={"X-User-Id": "tester"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(f"/products/{product_id}").status_code, 404)

        with get_session() as session:
            orphans = session.exec(select(ComponentTest).where(ComponentTest.id.in_(component_ids))).all()
            self.assertEqual(len(orphans), 2)
            self.assertTrue(all(c.product_id is None for c in orphans))
            photos = session.exec(select(ProductPhoto).where(ProductPhoto.id.in_(photo_ids))).all()
            self.assertEqual(photos, [])

        resp = self.client.get("/history/?table_modified=ComponentTest", headers={"X-User-Id": "admin"})
        detached = {h["modified_id"] for h in resp.json() if h["table_operation"] == "detach"}
        self.assertTrue(set(component_ids) <= detached)

    def test_photos_add_upload_delete(self):
        created = self._create_product("INV-PHOTO-1", "Camera")
        product_id = created["id"]

        resp = self.client.post(f"/products/{product_id}/photos", json={"url": data_uri(png_bytes())})
        self.assertEqual(resp.status_code, 200)
        first_id = resp.json()["id"]

        files = {"file": ("pic.png", png_bytes(), "image/png")}
        resp = self.client.post(f"/products/{product_id}/photos/upload", files=files, headers={"X-User-Id": "tester"})
        self.assertEqual(resp.status_code, 200)
        uploaded = resp.json()
        self.assertTrue(uploaded["url"].startswith("/uploads/"))
        self.assertEqual(self.client.get(uploaded["url"]).status_code, 200)

        files = {"file": ("notes.txt", b"hello", "text/plain")}
        resp = self.client.post(f"/products/{product_id}/photos/upload", files=files)
        self.assertEqual(resp.status_code, 400)

        self.assertEqual(self.client.delete(f"/photos/{first_id}").status_code, 200)
        self.assertEqual(self.client.delete(f"/photos/{first_id}").status_code, 404)
        urls = [p["url"] for p in self.client.get(f"/products/{product_id}/photos").json()]
        self.assertEqual(urls, [uploaded["url"]])

    def test_download_report(self):
        created = self._create_product(
            "INV-REP-1",
            "Widget  Pro",
            components=["Power", "Fan"],
            photos=[data_uri(png_bytes()), "https://example.com/remote.png"],
        )
        product_id = created["id"]
        files = {"file": ("pic.png", png_bytes(color=(0, 0, 0)), "image/png")}
        self.client.post(f"/products/{product_id}/photos/upload", files=files)
        comps = self.client.get(f"/products/{product_id}/components").json()
        self.client.patch(f"/components/{comps[0]['id']}", json={"status": "working", "notes": "12V ok"})

        resp = self.client.post(f"/products/{product_id}/report")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers["content-type"], DOCX_TYPE)
        self.assertRegex(resp.headers["content-disposition"], r'filename="Widget_Pro_test_report_\d+\.docx"')

        doc = Document(BytesIO(resp.content))
        rows = doc.tables[1].rows
        self.assertEqual([r.cells[0].text for r in rows[1:]], ["Power", "Fan"])
        self.assertEqual(rows[1].cells[2].text, "12V ok")
        # data URI + local upload embed, the remote URL becomes a marker
        self.assertEqual(len(doc.inline_shapes), 2)
        self.assertIn("[Image unavailable: Photo 2]", [p.text for p in doc.paragraphs])
        self.assertNotIn("Test Panel Screenshot", [p.text for p in doc.paragraphs])

    def test_download_report_with_screenshot(self):
        created = self._create_product("INV-REP-2", "Panel")
        product_id = created["id"]

        resp = self.client.post(f"/products/{product_id}/report", json={"screenshot": data_uri(png_bytes(400, 300))})
        self.assertEqual(resp.status_code, 200)
        doc = Document(BytesIO(resp.content))
        self.assertIn("Test Panel Screenshot", [p.text for p in doc.paragraphs])

        # an unusable screenshot is dropped, not an error
        resp = self.client.post(f"/products/{product_id}/report", json={"screenshot": "data:image/png;base64,AAAA"})
        self.assertEqual(resp.status_code, 200)
        doc = Document(BytesIO(resp.content))
        self.assertNotIn("Test Panel Screenshot", [p.text for p in doc.paragraphs])

    def test_screenshot_is_decoded_off_the_event_loop(self):
        product_id = self._create_product("INV-REP-3", "Panel")["id"]

        with mock.patch.object(api_main.asyncio, "to_thread", wraps=asyncio.to_thread) as to_thread:
            resp = self.client.post(f"/products/{product_id}/report", json={"screenshot": data_uri(png_bytes(40, 30))})

        self.assertEqual(resp.status_code, 200)
        offloaded = [c.args[0] for c in to_thread.call_args_list]
        self.assertIn(api_main.capture_screenshot, offloaded)

    def test_email_report_handoff(self):
        created = self._create_product("INV-MAIL-1", "Widget  Pro", components=["Fan"])
        product_id = created["id"]

        resp = self.client.post(f"/products/{product_id}/report/email", json={"email": "qa@example.com"})
        self.assertEqual(resp.status_code, 200, resp.text)
        handoff = resp.json()
        self.assertEqual(handoff["filename"], "Widget_Pro_test_report.docx")
        self.assertEqual(handoff["subject"], "Product Testing Report: Widget  Pro (ID: INV-MAIL-1)")
        self.assertIn("Please attach it to this email.", handoff["body"])
        self.assertTrue(handoff["mailto"].startswith("mailto:qa@example.com?subject="))
        self.assertIn("Inventory ID: INV-MAIL-1", unquote(handoff["mailto"]))

        saved = self.client.get(handoff["download_url"])
        self.assertEqual(saved.status_code, 200)
        self.assertTrue(saved.content.startswith(b"PK"))

        # a second export lands in a different directory
        again = self.client.post(f"/products/{product_id}/report/email", json={"email": "qa@example.com"}).json()
        self.assertEqual(again["filename"], handoff["filename"])
        self.assertNotEqual(again["download_url"], handoff["download_url"])

        resp = self.client.post(f"/products/{product_id}/report/email", json={"email": "not-an-address"})
        self.assertEqual(resp.status_code, 400)

    def test_report_for_missing_product(self):
        self.assertEqual(self.client.post("/products/999999/report").status_code, 404)
        resp = self.client.post("/products/999999/report/email", json={"email": "qa@example.com"})
        self.assertEqual(resp.status_code, 404)

    def test_drive_upload_job_rewrites_photo_url_and_report_loads_it(self):
        created = self._create_product("INV-DRIVE-1", "Synced")
        product_id = created["id"]
        files = {"file": ("pic.png", png_bytes(), "image/png")}
        uploaded = self.client.post(f"/products/{product_id}/photos/upload", files=files).json()
        local_path = os.path.join(os.environ["UPLOAD_DIR"], os.path.basename(uploaded["url"]))
        self.assertTrue(os.path.exists(local_path))

        job = {
            "photo_id": uploaded["id"],
            "path": local_path,
            "filename": os.path.basename(local_path),
            "content_type": "image/png",
            "user_id": "tester",
        }
        with mock.patch.object(api_main, "build_drive_service", return_value=mock.MagicMock()), \
                mock.patch.object(api_main, "upload_file", return_value="FILE123") as upload:
            api_main._process_upload_job(job)
        upload.assert_called_once()

        photos = self.client.get(f"/products/{product_id}/photos").json()
        self.assertEqual(photos[0]["url"], api_main.IMAGE_BASE_URL + "FILE123")
        self.assertFalse(os.path.exists(local_path))

        with mock.patch.dict(os.environ, {"USE_GOOGLE_DRIVE": "1"}), \
                mock.patch.object(api_main, "build_drive_service", return_value=mock.MagicMock()), \
                mock.patch.object(api_main, "download_file", return_value=png_bytes()) as download:
            resp = self.client.post(f"/products/{product_id}/report")
        self.assertEqual(resp.status_code, 200)
        download.assert_called_once()
        self.assertEqual(download.call_args[0][1], "FILE123")
        self.assertEqual(len(Document(BytesIO(resp.content)).inline_shapes), 1)

    def test_history_access_control_and_date_filter(self):
        # Without admin role, access is forbidden
        resp = self.client.get("/history/")
        self.assertEqual(resp.status_code, 403)

        resp = self.client.get("/history/", headers={"X-User-Id": "user"})
        self.assertEqual(resp.status_code, 403)

        self._create_product("INV-HIST-1", "Logged")

        today = datetime.utcnow().strftime("%Y-%m-%d")
        resp = self.client.get(
            f"/history/?date_from={today}&date_to={today}&user_id=tester", headers={"X-User-Id": "admin"}
        )
        self.assertEqual(resp.status_code, 200)
        hist = resp.json()
        self.assertTrue(any(h.get("table_modified") == "Product" for h in hist))

        resp = self.client.get("/history/?date_from=yesterday", headers={"X-User-Id": "admin"})
        self.assertEqual(resp.status_code, 400)


if __name__ == "__main__":
    # Allow running this test file directly
    unittest.main()
