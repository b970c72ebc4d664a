from __future__ import annotations

from pathlib import Path

import pytest

from recordshift.core.path_safety import PathSafetyError, resolve_job_document, validate_job_id


@pytest.mark.parametrize(
    "raw_id",
    [
        "../evil",
        "nested/job",
        "back\\slash",
        "~root",
        "$HOME",
        "job.json",
        "",
        "-leading-dash",
        "x" * 129,
    ],
)
def test_validate_job_id_rejects_unsafe_input(raw_id: str) -> None:
    with pytest.raises(PathSafetyError):
        validate_job_id(raw_id)


def test_validate_job_id_accepts_uuid_and_slugs() -> None:
    assert validate_job_id("4f9c2a1e-8d7b-4c55-9a0e-1b2c3d4e5f60") == "4f9c2a1e-8d7b-4c55-9a0e-1b2c3d4e5f60"
    assert validate_job_id("nightly_sync-01") == "nightly_sync-01"


def test_resolve_job_document_stays_under_jobs_root(tmp_path: Path) -> None:
    document = resolve_job_document(tmp_path, "job-1")
    assert document == (tmp_path / "job-1.json").resolve()

    with pytest.raises(PathSafetyError):
        resolve_job_document(tmp_path, "../job-1")
