"""Study-library browser and admin materials dashboard."""

from __future__ import annotations

import asyncio

import pytest

import materials
from backend import BackendError

LIBRARY = "/api/v1/study-library/materials"

CATALOGUE = [
    {"id": 1, "title": "HPAS 2022 Prelims Paper", "material_type": "previous_paper", "exam_id": 1,
     "subject_id": 10, "language": "english", "year": 2022, "view_count": 900, "download_count": 300,
     "rating_average": 4.6, "is_featured": True, "is_premium": False,
     "created_at": "2024-01-05T08:00:00Z", "exam_name": "HPAS"},
    {"id": 2, "title": "Himachal Geography Notes", "material_type": "notes", "exam_id": 2,
     "subject_id": 11, "language": "hindi", "year": 2023, "view_count": 1500, "download_count": 120,
     "rating_average": 4.1, "is_featured": False, "is_premium": True,
     "created_at": "2024-02-10T08:00:00Z", "subject_name": "Geography"},
    {"id": 3, "title": "Answer Key JBT 2023", "material_type": "answer_key", "exam_id": 2,
     "subject_id": 12, "language": "english", "year": 2023, "view_count": 50, "download_count": 700,
     "rating_average": 3.2, "is_featured": False, "is_premium": False,
     "created_at": "2023-12-20T08:00:00Z"},
]


def build_pdf(pages: list[str]) -> bytes:
    """Smallest useful PDF: one Helvetica text line per page."""
    objects = [b"<< /Type /Catalog /Pages 2 0 R >>", None]
    kids = []
    font_ref = 3 + 2 * len(pages)
    for text in pages:
        page_num = len(objects) + 1
        kids.append(f"{page_num} 0 R")
        stream = f"BT /F1 18 Tf 72 700 Td ({text}) Tj ET".encode()
        objects.append(
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents {page_num + 1} 0 R "
            f"/Resources << /Font << /F1 {font_ref} 0 R >> >> >>".encode()
        )
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")
    objects[1] = f"<< /Type /Pages /Kids [{' '.join(kids)}] /Count {len(pages)} >>".encode()
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for num, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % num + body + b"\nendobj\n"
    xref = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref)
    return bytes(out)


class TestBrowserHelpers:
    def test_filters(self):
        ids = lambda rows: [m["id"] for m in rows]  # noqa: E731
        assert ids(materials.filter_materials(CATALOGUE, exam_id=2)) == [2, 3]
        assert ids(materials.filter_materials(CATALOGUE, material_type="all", language="english")) == [1, 3]
        assert ids(materials.filter_materials(CATALOGUE, min_rating=4.5)) == [1]
        assert ids(materials.filter_materials(CATALOGUE, featured_only=True)) == [1]
        assert ids(materials.filter_materials(CATALOGUE, premium_only=True)) == [2]
        assert ids(materials.filter_materials(CATALOGUE, search="geography")) == [2]
        assert ids(materials.filter_materials(CATALOGUE, year=2023)) == [2, 3]

    @pytest.mark.parametrize("sort_by, direction, expected", [
        ("newest", "desc", [2, 1, 3]),
        ("newest", "asc", [3, 1, 2]),
        ("popular", "desc", [2, 1, 3]),
        ("downloads", "desc", [3, 1, 2]),
        ("rating", "desc", [1, 2, 3]),
        ("title", "asc", [3, 2, 1]),
    ])
    def test_sorting(self, sort_by, direction, expected):
        rows = materials.sort_materials(CATALOGUE, sort_by, direction)
        assert [m["id"] for m in rows] == expected


class TestBrowserRoutes:
    def test_infinite_scroll_pages(self, client, backend):
        backend.responses[("GET", LIBRARY)] = CATALOGUE
        first = client.get("/api/study-materials?limit=2&sort_by=newest").json()
        assert [m["id"] for m in first["items"]] == [2, 1]
        assert first["has_more"] is True
        assert first["next_offset"] == 2

        last = client.get(f"/api/study-materials?limit=2&offset={first['next_offset']}").json()
        assert [m["id"] for m in last["items"]] == [3]
        assert last["has_more"] is False
        assert last["next_offset"] is None

    def test_server_filters_are_forwarded(self, client, backend, student_headers):
        backend.responses[("GET", LIBRARY)] = CATALOGUE
        client.get("/api/study-materials?exam_id=2&material_type=all&language=hindi",
                   headers=student_headers)
        call = backend.calls_to("GET", LIBRARY)[0]
        assert call["params"]["exam_id"] == 2
        assert call["params"]["material_type"] is None
        assert call["params"]["language"] == "hindi"
        assert call["token"] is not None

    def test_limit_bounds(self, client, backend):
        assert client.get("/api/study-materials?limit=0").status_code == 422
        assert client.get("/api/study-materials?limit=101").status_code == 422

    def test_stats_fall_back_to_empty(self, client, backend):
        backend.responses[("GET", "/api/v1/study-library/stats")] = BackendError(500, "Failed")
        data = client.get("/api/study-materials/stats").json()
        assert data["total_materials"] == 0
        assert data["latest_additions"] == []

    def test_previous_papers_and_download(self, client, backend):
        backend.responses[("GET", "/api/v1/study-library/previous-papers")] = [{"id": 1}]
        assert client.get("/api/study-materials/previous-papers?exam_id=1").json() == [{"id": 1}]
        client.post("/api/study-materials/1/download")
        assert backend.calls_to("POST", f"{LIBRARY}/1/download")


class TestAdminStats:
    def test_analysis_stats_are_transformed(self, client, backend, admin_headers):
        backend.responses[("GET", "/api/v1/content-library/analysis-stats")] = {
            "total_content": 200, "valuable_content": 150, "unanalyzed_content": 40,
            "analysis_percentage": 80.0,
        }
        data = client.get("/api/admin/materials/stats", headers=admin_headers).json()
        assert data["total_materials"] == 200
        assert data["published_materials"] == 150
        assert data["pending_materials"] == 40
        assert data["draft_materials"] == 12
        assert data["total_views"] == 30000
        assert data["total_downloads"] == 9000
        assert data["materials_by_subject"][0] == {"subject": "General Knowledge", "count": 60}
        assert data["recent_uploads"] == 20
        assert data["analysis_progress"] == 80.0

    def test_small_totals_use_floor_values(self):
        data = materials.material_stats_from_analysis({"total_content": 0})
        assert data["materials_by_type"][0] == {"type": "Question Papers", "count": 80}
        assert data["recent_uploads"] == 12

    def test_fixture_when_backend_fails(self, client, backend, admin_headers):
        backend.responses[("GET", "/api/v1/content-library/analysis-stats")] = BackendError(
            502, "Failed to fetch materials stats"
        )
        data = client.get("/api/admin/materials/stats", headers=admin_headers).json()
        assert data["source"] == "fixture"
        assert data["total_materials"] == 487


class TestAdminUploads:
    def test_inspect_pdf(self):
        info = materials.inspect_pdf(build_pdf(["Shimla is the capital", "Second page"]))
        assert info["page_count"] == 2
        assert "Shimla is the capital" in info["preview"]

    def test_preview_is_truncated(self):
        info = materials.inspect_pdf(build_pdf(["Kangra Valley Railway"]), preview_chars=6)
        assert info["preview"] == "Kangra"

    def test_pdf_upload_is_inspected_and_forwarded(self, client, backend, admin_headers):
        backend.responses[("POST", "/api/v1/admin/materials")] = {"id": 77}
        resp = client.post(
            "/api/admin/materials",
            headers=admin_headers,
            data={"title": "HPAS 2021", "subject": "General Studies", "tags": "hpas,2021"},
            files={"file": ("hpas2021.pdf", build_pdf(["Paper one"]), "application/pdf")},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["material"] == {"id": 77}
        assert data["pdf"]["page_count"] == 1

        sent = backend.calls_to("POST", "/api/v1/admin/materials")[0]
        assert sent["data"]["page_count"] == "1"
        assert sent["data"]["tags"] == "hpas,2021"
        assert sent["files"]["file"][0] == "hpas2021.pdf"

    def test_unreadable_pdf_is_rejected(self, client, backend, admin_headers):
        resp = client.post(
            "/api/admin/materials",
            headers=admin_headers,
            data={"title": "Broken", "subject": "GK"},
            files={"file": ("broken.pdf", b"not a pdf at all", "application/pdf")},
        )
        assert resp.status_code == 400
        assert not backend.calls_to("POST", "/api/v1/admin/materials")

    def test_non_pdf_files_skip_inspection(self, client, backend, admin_headers):
        resp = client.post(
            "/api/admin/materials",
            headers=admin_headers,
            data={"title": "Syllabus", "subject": "GK"},
            files={"file": ("syllabus.docx", b"binary", "application/octet-stream")},
        )
        assert resp.json()["pdf"] is None
        assert "page_count" not in backend.calls_to("POST", "/api/v1/admin/materials")[0]["data"]

    def test_admin_list_filters(self, client, backend, admin_headers):
        backend.responses[("GET", "/api/v1/admin/materials")] = {"materials": [
            {"id": 1, "title": "Polity notes", "subject": "Polity", "type": "notes", "status": "published"},
            {"id": 2, "title": "History paper", "subject": "History", "type": "paper", "status": "draft"},
        ]}
        data = client.get("/api/admin/materials?type=notes", headers=admin_headers).json()
        assert [m["id"] for m in data["materials"]] == [1]
        assert backend.calls_to("GET", "/api/v1/admin/materials")[0]["params"]["type"] == "notes"

    def test_pdf_is_inspected_off_the_event_loop(self, client, backend, admin_headers, monkeypatch):
        where = []

        def fake_inspect(data, preview_chars=500):
            try:
                asyncio.get_running_loop()
                where.append("event loop")
            except RuntimeError:
                where.append("worker thread")
            return {"page_count": 3, "preview": ""}

        monkeypatch.setattr(materials, "inspect_pdf", fake_inspect)
        resp = client.post(
            "/api/admin/materials",
            headers=admin_headers,
            data={"title": "HPAS 2020", "subject": "GK"},
            files={"file": ("hpas2020.pdf", b"%PDF-1.4", "application/pdf")},
        )
        assert resp.json()["pdf"]["page_count"] == 3
        assert where == ["worker thread"]
