"""
Tests for field normalization used by the source adapters.
"""
from datetime import timedelta

import pytest

from conftest import START, FakeAdapter, raw_posting
from core.errors import ParseError
from core.models import JobType
from scrapers.normalize import (
    compute_fingerprint,
    detect_remote,
    extract_experience,
    extract_requirements,
    extract_skills,
    normalize_job_type,
    parse_salary,
)


@pytest.mark.parametrize("raw,expected", [
    (None, JobType.FULL_TIME),
    ("Full-time", JobType.FULL_TIME),
    ("Part-time", JobType.PART_TIME),
    ("Contract", JobType.CONTRACT),
    ("Internship", JobType.INTERNSHIP),
    ("Freelance", JobType.FREELANCE),
    ("Temporary", JobType.TEMPORARY),
    ("Something else", JobType.FULL_TIME),
])
def test_normalize_job_type(raw, expected):
    assert normalize_job_type(raw) == expected


@pytest.mark.parametrize("raw,expected", [
    ("$80,000 - $100,000 a year", (80000, 100000)),
    ("80k-100k", (80000, 100000)),
    ("From $95,000 a year", (95000, 95000)),
    ("$40 - $50 an hour", (83200, 104000)),
    ("Competitive", (None, None)),
    (None, (None, None)),
])
def test_parse_salary(raw, expected):
    assert parse_salary(raw) == expected


def test_extract_skills_uses_word_boundaries():
    skills = extract_skills("We use Python, Go and PostgreSQL. Experience with C++ and Docker.")
    assert "Python" in skills
    assert "Go" in skills
    assert "PostgreSQL" in skills
    assert "C++" in skills
    assert "Java" not in skills
    assert extract_skills("Good communication and a going attitude") == ["Communication"]


def test_extract_requirements():
    description = (
        "Join our team. Must have 5 years of backend work. "
        "Knowledge of Kubernetes is a plus. We offer free lunch."
    )
    assert extract_requirements(description) == [
        "Must have 5 years of backend work",
        "Knowledge of Kubernetes is a plus",
    ]


def test_extract_experience_and_remote():
    assert extract_experience("Senior Backend Engineer") == "SENIOR"
    assert extract_experience("Graduate Developer") == "JUNIOR"
    assert extract_experience("Backend Engineer") == "MID"
    assert detect_remote("Remote, US") is True
    assert detect_remote("Berlin", "Hybrid, 2 days work from home") is True
    assert detect_remote("Berlin", "Office based") is False


def test_fingerprint_ignores_case_and_punctuation():
    a = compute_fingerprint("Senior  Python Developer", "Acme, Inc.", "Berlin")
    b = compute_fingerprint("senior python developer", "ACME Inc", "berlin")
    c = compute_fingerprint("Senior Python Developer", "Acme, Inc.", "Munich")
    assert a == b
    assert a != c


def test_adapter_normalize_builds_scraped_posting():
    adapter = FakeAdapter("alpha")
    raw = raw_posting(
        "Senior Python Developer",
        company=" Acme ",
        location="Remote",
        salary="$120,000 - $150,000 a year",
        job_type="Contract",
        external_id="abc123",
    )

    posting = adapter.normalize(raw, source_id="source-1", now=START)

    assert posting.company_name == "Acme"
    assert posting.type == JobType.CONTRACT
    assert (posting.salary_min, posting.salary_max) == (120000, 150000)
    assert posting.experience == "SENIOR"
    assert posting.is_remote is True
    assert posting.is_scraped is True
    assert posting.source_id == "source-1"
    assert posting.external_id == "abc123"
    assert posting.expires_at == START + timedelta(days=60)
    assert posting.application_deadline == START + timedelta(days=30)
    assert posting.fingerprint == compute_fingerprint("Senior Python Developer", "Acme", "Remote")


def test_adapter_normalize_rejects_incomplete_postings():
    adapter = FakeAdapter("alpha")
    with pytest.raises(ParseError):
        adapter.normalize(raw_posting(title="  "))
    with pytest.raises(ParseError):
        adapter.normalize(raw_posting(company=""))
