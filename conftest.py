import pytest
import json
from datetime import datetime, timezone
from strata_lens import (
    ProgressReporter,
    FileChangeEvent,
    CouplingEdge,
    EnrichedFile,
    STATUS_BY_OPERATION,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


# Five commits, three authors, two weeks in March and one in April 2024.
#   c1 Mon 2024-03-04 alice  A README.md, A src/app.py, A src/utils.py
#   c2 Wed 2024-03-06 bob    M src/app.py, M src/utils.py
#   c3 Tue 2024-03-12 alice  M src/app.py, A tests/test_app.py
#   c4 Tue 2024-04-02 carol  A src/core/engine.py, M src/app.py
#   c5 Wed 2024-04-03 bob    D src/utils.py
SAMPLE_COMMITS = [
    ("c1", utc(2024, 3, 4, 10), "Alice Smith", "alice@example.com", "initial commit",
     [("README.md", "A"), ("src/app.py", "A"), ("src/utils.py", "A")]),
    ("c2", utc(2024, 3, 6, 12), "Bob Jones", "bob@example.com", "add feature",
     [("src/app.py", "M"), ("src/utils.py", "M")]),
    ("c3", utc(2024, 3, 12, 9), "Alice Smith", "alice@example.com", "add tests",
     [("src/app.py", "M"), ("tests/test_app.py", "A")]),
    ("c4", utc(2024, 4, 2, 15), "Carol White", "carol@example.com", "engine",
     [("src/core/engine.py", "A"), ("src/app.py", "M")]),
    ("c5", utc(2024, 4, 3, 8), "Bob Jones", "bob@example.com", "drop utils",
     [("src/utils.py", "D")]),
]


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def fixed_now():
    return utc(2024, 7, 1)


@pytest.fixture
def sample_events():
    """Events in commit order, one per (file, commit) pair."""
    events = []
    for commit_hash, when, name, email, subject, changes in SAMPLE_COMMITS:
        for path, op in changes:
            events.append(
                FileChangeEvent(
                    file_path=path,
                    status=STATUS_BY_OPERATION[op],
                    commit_hash=commit_hash,
                    timestamp=when,
                    author_name=name,
                    author_email=email,
                    commit_subject=subject,
                )
            )
    return events


@pytest.fixture
def sample_edges():
    return [
        CouplingEdge("A", "B", 0.9, 10),
        CouplingEdge("A", "C", 0.3, 2),
        CouplingEdge("B", "C", 0.6, 4),
        CouplingEdge("D", "E", 0.5, 3),
    ]


@pytest.fixture
def sample_files():
    return [
        EnrichedFile(
            path="src/old.py",
            first_seen=utc(2020, 1, 1),
            last_modified=utc(2021, 1, 1),
            total_commits=100,
            unique_authors=1,
            operations={"M": 90, "A": 5, "D": 5},
            age_days=366.0,
        ),
        EnrichedFile(
            path="src/mid.py",
            first_seen=utc(2022, 1, 1),
            last_modified=utc(2024, 6, 1),
            total_commits=20,
            unique_authors=3,
            operations={"M": 8, "A": 2},
            age_days=882.0,
        ),
        EnrichedFile(
            path="src/new.py",
            first_seen=utc(2024, 1, 1),
            last_modified=utc(2024, 7, 1),
            total_commits=4,
            unique_authors=6,
            operations={"A": 1, "M": 3},
            age_days=182.0,
        ),
    ]


def _lifecycle_json():
    files = {}
    for commit_hash, when, name, email, subject, changes in SAMPLE_COMMITS:
        for path, op in changes:
            files.setdefault(path, []).append(
                {
                    "commit_hash": commit_hash,
                    "timestamp": int(when.timestamp()),
                    "datetime": when.isoformat(),
                    "operation": op,
                    "author_name": name,
                    "author_email": email,
                    "commit_subject": subject,
                }
            )
    return {
        "files": files,
        "total_commits": len(SAMPLE_COMMITS),
        "total_changes": sum(len(c[5]) for c in SAMPLE_COMMITS),
        "schema_version": "1.1.0",
    }


@pytest.fixture
def dataset_dir(tmp_path):
    """An analyzer output directory with the datasets the CLI reads."""
    root = tmp_path / "dataset"
    (root / "metadata").mkdir(parents=True)
    (root / "aggregations").mkdir()
    (root / "networks").mkdir()

    def dump(rel_path, data):
        with open(root / rel_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    dump("file_lifecycle.json", _lifecycle_json())
    dump(
        "metadata/file_index.json",
        {
            "schema_version": "1.0.0",
            "total_files": 2,
            "files": {
                "src/app.py": {
                    "first_seen": "2024-03-04T10:00:00+00:00",
                    "last_modified": "2024-04-02T15:00:00+00:00",
                    "total_commits": 4,
                    "unique_authors": 3,
                    "operations": {"A": 1, "M": 3},
                    "age_days": 29.21,
                },
                "src/utils.py": {
                    "first_seen": "2024-03-04T10:00:00+00:00",
                    "last_modified": "2024-04-03T08:00:00+00:00",
                    "total_commits": 3,
                    "unique_authors": 2,
                    "operations": {"A": 1, "M": 1, "D": 1},
                    "age_days": 29.92,
                },
            },
        },
    )
    dump(
        "aggregations/temporal_daily.json",
        {
            "schema_version": "1.0.0",
            "aggregation_level": "daily",
            "total_days": 2,
            "days": {
                "2024-03-04": {"date": "2024-03-04", "commits": 1},
                "2024-04-03": {"date": "2024-04-03", "commits": 1},
            },
        },
    )
    dump(
        "aggregations/directory_stats.json",
        {
            "schema_version": "1.0.0",
            "directories": {
                "src": {"path": "src", "activity_score": 2.67},
                "tests": {"path": "tests", "activity_score": 1.0},
            },
        },
    )
    dump(
        "networks/cochange_network.json",
        {
            "schema_version": "1.0.0",
            "network_type": "file_cochange",
            "edges": [
                {
                    "source": "src/app.py",
                    "target": "src/utils.py",
                    "cochange_count": 2,
                    "coupling_strength": 0.5,
                }
            ],
        },
    )
    return root
