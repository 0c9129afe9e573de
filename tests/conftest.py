import pytest

from sitecloner.config import Settings

from .fakes import FakeBrowser, example_site


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        api_key="",
        allowed_hosts=(),
        jobs_dir=str(tmp_path / "jobs"),
        max_concurrent_jobs=2,
        default_extra_wait_ms=0,
        cors_origins=("http://localhost:3000",),
    )


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser(example_site())
