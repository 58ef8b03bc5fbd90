"""
Identifier parsing for scanned codes, file ids and Print OS names.

Everything in this module is pure: no store access and no logging. The
reconciliation engine, the scan ingestor and the sqlite repositories all
resolve identities through these helpers so the naming convention lives in
exactly one place.

File identifiers follow ``FILE_<version>_Labex_<job_id>_<descriptor...>`` where
the job id is itself a multi-part number such as ``4677_5995``. Only
identifiers carrying the brand marker are resolvable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

BRAND_MARKER = "Labex"

FILE_ID_PATTERN = re.compile(rf"^FILE_(\d+)_{BRAND_MARKER}_(.+)$")
MANUAL_PREPRESS_PATTERN = re.compile(rf"^{BRAND_MARKER}_(\d+(?:_\d+)+)(?:_|$)")
NUMERIC_SEGMENT = re.compile(r"^\d+$")

# job_id needs at least two segments, version_tag one
MIN_JOB_SCAN_SEGMENTS = 3


@dataclass(frozen=True)
class FileIdentity:
    job_id: str
    version_tag: str


@dataclass(frozen=True)
class ManualPrepressIdentity:
    job_id: str


@dataclass(frozen=True)
class RunlistMatch:
    runlist_id: str
    exact: bool = True


@dataclass(frozen=True)
class AmbiguousRunlistMatch:
    candidates: Tuple[str, ...]


@dataclass(frozen=True)
class JobVersionMatch:
    job_id: str
    version_tag: str


@dataclass(frozen=True)
class Unresolved:
    text: str


ScanClassification = Union[RunlistMatch, AmbiguousRunlistMatch, JobVersionMatch, Unresolved]


def contains_brand_marker(value: str) -> bool:
    """Case-insensitive check for the brand marker anywhere in ``value``."""
    return BRAND_MARKER.lower() in value.lower()


def parse_file_identifier(file_id: str) -> Optional[FileIdentity]:
    """
    Resolve a file identifier to its job id and version tag.

    Args:
        file_id: Identifier such as ``FILE_1_Labex_4677_5995_80``

    Returns:
        FileIdentity, or None for foreign-brand or malformed identifiers

    Example:
        >>> parse_file_identifier("FILE_1_Labex_4677_5995_80")
        FileIdentity(job_id='4677_5995', version_tag='1')
        >>> parse_file_identifier("FILE_1_Labex_4677_5995_50 x 50 mm_Circle")
        FileIdentity(job_id='4677_5995', version_tag='1')
    """
    if not contains_brand_marker(file_id):
        return None

    match = FILE_ID_PATTERN.match(file_id)
    if not match:
        return None

    version_tag, rest = match.group(1), match.group(2)
    parts = rest.split("_")

    if len(parts) < 2:
        # Legacy single-segment job ids are taken verbatim.
        return FileIdentity(job_id=rest, version_tag=version_tag)

    numeric_parts = []
    for part in parts:
        if not NUMERIC_SEGMENT.match(part):
            break
        numeric_parts.append(part)

    # The final segment is the file's descriptor (quantity), never part of the job id.
    if len(numeric_parts) == len(parts) and len(numeric_parts) > 2:
        numeric_parts = numeric_parts[:-1]

    if len(numeric_parts) >= 2:
        job_id = "_".join(numeric_parts)
    else:
        job_id = "_".join(parts[:-1])

    return FileIdentity(job_id=job_id, version_tag=version_tag)


def parse_manual_prepress_identifier(name: str) -> Optional[ManualPrepressIdentity]:
    """
    Recognise Print OS names that reference a job directly.

    ``Labex_4670_5988_MixedLabels_140 x 150 mm`` resolves to job ``4670_5988``;
    imposition names such as ``Labex_4aa0cb5cd7_100x210`` do not match.
    """
    match = MANUAL_PREPRESS_PATTERN.match(name)
    if not match:
        return None
    return ManualPrepressIdentity(job_id=match.group(1))


def split_job_scan(text: str) -> Optional[JobVersionMatch]:
    """Split ``<job_id>_<version_tag>`` scans; the last segment is the version tag."""
    parts = text.split("_")
    if len(parts) < MIN_JOB_SCAN_SEGMENTS:
        return None
    return JobVersionMatch(job_id="_".join(parts[:-1]), version_tag=parts[-1])


def classify_scan_input(text: str, runlist_ids: Iterable[str]) -> ScanClassification:
    """
    Decide whether a scanned value names a runlist or a job version.

    Exact runlist matches win. Otherwise the value is matched as a substring of
    the known runlist ids: one hit resolves, several hits are ambiguous and
    returned as such so the caller can reject the scan instead of guessing.
    Finally the value is split as ``<job_id>_<version_tag>``.

    Args:
        text: Raw scanned value
        runlist_ids: Known runlist identifiers

    Returns:
        One of RunlistMatch, AmbiguousRunlistMatch, JobVersionMatch, Unresolved
    """
    scan = text.strip()
    if not scan:
        return Unresolved(text=text)

    known = {runlist_id for runlist_id in runlist_ids if runlist_id}
    if scan in known:
        return RunlistMatch(runlist_id=scan, exact=True)

    partial = sorted(runlist_id for runlist_id in known if scan in runlist_id)
    if len(partial) == 1:
        return RunlistMatch(runlist_id=partial[0], exact=False)
    if len(partial) > 1:
        return AmbiguousRunlistMatch(candidates=tuple(partial))

    job_match = split_job_scan(scan)
    if job_match is not None:
        return job_match

    return Unresolved(text=text)


def file_identifier_prefix(job_id: str, version_tag: str) -> str:
    """Prefix shared by every file id of a job version, e.g. ``FILE_1_Labex_4604_5889_``."""
    return f"FILE_{version_tag}_{BRAND_MARKER}_{job_id}_"


def file_belongs_to(file_id: str, job_id: str, version_tag: str) -> bool:
    parsed = parse_file_identifier(file_id)
    return parsed is not None and parsed == FileIdentity(job_id=job_id, version_tag=version_tag)
