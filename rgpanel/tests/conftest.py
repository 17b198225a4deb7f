"""Shared fixtures: a scriptable stand-in for the search tool."""

import sys
import textwrap
from pathlib import Path

import pytest

from rgpanel.engine.config import Config


FAKE_TOOL = textwrap.dedent('''
    import json
    import os
    import sys
    import time

    args = sys.argv[1:]
    log = os.environ.get("FAKE_RG_ARGV_LOG")
    if log:
        with open(log, "a") as f:
            f.write(json.dumps(args) + "\\n")

    pattern = args[args.index("--") + 1]
    head, _, rest = pattern.partition(":")

    def emit(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()

    if head == "sleep":
        time.sleep(float(rest.split()[0]))
    if head == "boom":
        sys.stderr.write("regex parse error: unclosed group\\n")
        sys.exit(2)
    if head == "garbage":
        sys.stdout.write("this is not json\\n")
        sys.stdout.flush()
        time.sleep(5)
        sys.exit(0)
    if head == "mixed":
        record = {
            "type": "match",
            "data": {
                "path": {"text": "src/a.txt"},
                "lines": {"text": "mixed line\\n"},
                "line_number": 1,
                "absolute_offset": 0,
                "submatches": [],
            },
        }
        sys.stdout.write(json.dumps(record) + "\\nthis is not json\\n")
        sys.stdout.flush()
        time.sleep(5)
        sys.exit(0)

    count = int(rest) if head == "many" else 3
    emit({"type": "begin", "data": {"path": {"text": "src/a.txt"}}})
    for i in range(count):
        prefix = "line %d " % i
        emit({
            "type": "match",
            "data": {
                "path": {"text": "src/a.txt"},
                "lines": {"text": prefix + pattern + "\\n"},
                "line_number": i + 1,
                "absolute_offset": 0,
                "submatches": [{
                    "match": {"text": pattern},
                    "start": len(prefix),
                    "end": len(prefix) + len(pattern),
                }],
            },
        })
    emit({"type": "end", "data": {"path": {"text": "src/a.txt"}}})
    emit({
        "type": "summary",
        "data": {
            "elapsed_total": {"secs": 0, "nanos": 12000000, "human": "0.012s"},
            "stats": {"matched_lines": count},
        },
    })
''')


@pytest.fixture
def fake_tool(tmp_path) -> list:
    """Command prefix running the fake search tool."""
    script = tmp_path / "fake_rg.py"
    script.write_text(FAKE_TOOL)
    return [sys.executable, str(script)]


@pytest.fixture
def workspace(tmp_path) -> Path:
    """Workspace with a nested document directory."""
    root = tmp_path / "workspace"
    doc_dir = root / "pkg" / "sub"
    doc_dir.mkdir(parents=True)
    (doc_dir / "module.py").write_text("value = 1\n")
    (root / "src").mkdir()
    (root / "src" / "a.txt").write_text("\n".join(f"line {i}" for i in range(10)) + "\n")
    return root


@pytest.fixture
def test_config(fake_tool) -> Config:
    """Configuration pointing at the fake tool with fast throttling."""
    config = Config()
    config.search.command = fake_tool
    config.throttle.initial_delay_ms = 0
    config.throttle.interval_ms = 10
    return config
