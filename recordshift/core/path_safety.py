from __future__ import annotations

import re
from pathlib import Path


class PathSafetyError(ValueError):
    pass


_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


def validate_job_id(raw_id: str) -> str:
    if "/" in raw_id or "\\" in raw_id:
        raise PathSafetyError("Job id must not contain path separators")
    if ".." in raw_id:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_id:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_id:
        raise PathSafetyError("Environment variable expansion is not allowed")
    if not _JOB_ID_PATTERN.match(raw_id):
        raise PathSafetyError("Job id must be 1-128 characters of [A-Za-z0-9_-]")
    return raw_id


def resolve_job_document(jobs_root: Path, job_id: str) -> Path:
    validate_job_id(job_id)
    candidate = (jobs_root / f"{job_id}.json").resolve(strict=False)
    root = jobs_root.resolve(strict=False)

    if candidate.parent == root:
        return candidate

    raise PathSafetyError("Job document escapes jobs root")
