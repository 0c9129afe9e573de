import asyncio
import io
import time
import zipfile
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from sitecloner.api import create_app
from sitecloner.jobs import JobManager

from .fakes import public_resolver

TARGET = "http://example.com/"


def wait_for(client, job_id, headers=None, timeout=10.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/jobs/{job_id}", headers=headers).json()
        if body["status"] in ("done", "error") or time.monotonic() > deadline:
            return body
        time.sleep(0.05)


async def slow_runner(url, work_dir, archive_path, options, on_progress=None, single_process=False):
    await asyncio.sleep(30)


@pytest.fixture
def client(settings, fake_browser):
    manager = JobManager(settings, resolver=public_resolver, session_factory=fake_browser.launch)
    with TestClient(create_app(settings, manager)) as client:
        yield client


class TestCloneFlow:
    def test_create_poll_download(self, client):
        # Given: a two-page site behind a fake browser
        payload = {"url": TARGET, "options": {"routes": ["/", "/about"], "extraWaitMs": 0}}

        # When: creating a job and polling it to completion
        created = client.post("/api/jobs", json=payload)
        assert created.status_code == 202
        job_id = created.json()["jobId"]
        body = wait_for(client, job_id)

        # Then: the job is done and its archive holds the offline copy
        assert body["status"] == "done", body
        assert body["jobId"] == job_id
        assert body["url"] == TARGET
        assert body["error"] is None
        assert body["progress"]["assets"] == 5
        assert body["createdAt"] <= body["updatedAt"]
        assert body["downloadUrl"].endswith(f"/api/jobs/{job_id}/download")

        download = client.get(f"/api/jobs/{job_id}/download")
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/zip"
        assert f"site-clone-{job_id}.zip" in download.headers["content-disposition"]
        with zipfile.ZipFile(io.BytesIO(download.content)) as zf:
            names = set(zf.namelist())
        assert {"index.html", "about/index.html", "assets/static/app.css", "assets/img/logo.png"} <= names

    def test_status_before_completion_has_no_download_url(self, settings):
        manager = JobManager(settings, runner=slow_runner, resolver=public_resolver)
        with TestClient(create_app(settings, manager)) as client:
            job_id = client.post("/api/jobs", json={"url": TARGET}).json()["jobId"]
            body = client.get(f"/api/jobs/{job_id}").json()
            assert body["status"] in ("queued", "running")
            assert body["downloadUrl"] is None

            early = client.get(f"/api/jobs/{job_id}/download")
            assert early.status_code == 400
            assert early.json() == {"error": "Job not done"}

    def test_failed_capture_reports_error(self, client):
        payload = {"url": TARGET, "options": {"routes": ["/", "/missing"], "extraWaitMs": 0}}
        job_id = client.post("/api/jobs", json=payload).json()["jobId"]
        body = wait_for(client, job_id)
        assert body["status"] == "error"
        assert "Navigation timeout" in body["error"]
        assert client.get(f"/api/jobs/{job_id}/download").status_code == 400


class TestValidation:
    def test_private_target_rejected(self, settings):
        with TestClient(create_app(settings, JobManager(settings))) as client:
            resp = client.post("/api/jobs", json={"url": "http://127.0.0.1/"})
        assert resp.status_code == 400
        assert "private" in resp.json()["error"]

    @pytest.mark.parametrize(
        "payload,error",
        [
            ({}, "Missing url"),
            ({"url": "   "}, "Missing url"),
            ({"url": "ftp://example.com/"}, "Only http/https allowed"),
            ({"url": "http://[::1"}, "Invalid URL"),
            ({"url": TARGET, "options": {"routes": ["http://[::1"]}}, "Invalid route"),
            ({"url": TARGET, "options": {"waitUntil": "forever"}}, "waitUntil"),
            ({"url": TARGET, "options": {"routes": ["https://evil.example.net/"]}}, "origin"),
        ],
    )
    def test_bad_requests(self, client, payload, error):
        resp = client.post("/api/jobs", json=payload)
        assert resp.status_code == 400
        assert error in resp.json()["error"]

    def test_malformed_options(self, client):
        resp = client.post("/api/jobs", json={"url": TARGET, "options": {"extraWaitMs": "soon"}})
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_malformed_json(self, client):
        resp = client.post("/api/jobs", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_unknown_job(self, client):
        resp = client.get("/api/jobs/0123456789abcdef0123")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not found"}
        assert client.get("/api/jobs/0123456789abcdef0123/download").status_code == 404


class TestAuth:
    @pytest.fixture
    def secured(self, settings, fake_browser):
        settings = replace(settings, api_key="s3cret")
        manager = JobManager(settings, resolver=public_resolver, session_factory=fake_browser.launch)
        with TestClient(create_app(settings, manager)) as client:
            yield client

    def test_missing_or_wrong_key(self, secured):
        assert secured.post("/api/jobs", json={"url": TARGET}).status_code == 401
        resp = secured.get("/api/jobs/anything", headers={"X-API-Key": "nope"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_correct_key(self, secured):
        headers = {"X-API-Key": "s3cret"}
        resp = secured.post("/api/jobs", json={"url": TARGET, "options": {"extraWaitMs": 0}}, headers=headers)
        assert resp.status_code == 202
        body = wait_for(secured, resp.json()["jobId"], headers=headers)
        assert body["status"] == "done"

    def test_health_needs_no_key(self, secured):
        assert secured.get("/health").status_code == 200


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert isinstance(body["ts"], int)

    def test_head_and_root(self, client):
        assert client.head("/health").status_code == 200
        assert client.get("/").text == "ok"

    def test_unknown_route(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not Found"}
