"""Tests for artifacts/consistency.py module."""

from pathlib import Path

import pytest

from sdk_pipeline.artifacts.consistency import (
    TrackedArtifact,
    check_artifacts,
    compare,
    compute_file_hash,
    normalize_lines,
)
from sdk_pipeline.errors import ArtifactMismatchError

SPEC = """openapi: 3.0.0
info:
  title: Aptos Node API
  version: 1.2.0
paths:
  /accounts:
    get: {}
"""


@pytest.fixture
def spec_file(tmp_path: Path) -> Path:
    path = tmp_path / "baseline" / "spec.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(SPEC)
    return path


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def _make_tree(root: Path, files: dict[str, str]) -> Path:
    for rel, content in files.items():
        _write(root / rel, content)
    return root


class TestNormalizeLines:
    """Tests for normalize_lines function."""

    def test_strips_trailing_whitespace(self):
        """Trailing spaces and tabs are ignored."""
        assert normalize_lines("a  \nb\t\n") == ["a", "b"]

    def test_drops_blank_lines(self):
        """Blank and whitespace-only lines are ignored."""
        assert normalize_lines("a\n\n   \nb\n") == ["a", "b"]

    def test_unifies_line_endings(self):
        """CRLF and CR line endings compare equal to LF."""
        assert normalize_lines("a\r\nb\rc") == ["a", "b", "c"]

    def test_keeps_leading_whitespace(self):
        """Indentation is significant."""
        assert normalize_lines("  a\n") == ["  a"]


class TestCompareFiles:
    """Tests for compare on single files."""

    def test_reflexive(self, spec_file):
        """A file always equals itself."""
        result = compare(spec_file, spec_file)
        assert result.equal is True
        assert result.diff is None

    def test_identical_copy(self, spec_file, tmp_path):
        """A byte-identical copy is equal."""
        generated = _write(tmp_path / "generated" / "spec.yaml", SPEC)
        assert compute_file_hash(generated) == compute_file_hash(spec_file)
        assert compare(generated, spec_file).equal is True

    def test_trailing_whitespace_and_blank_lines_ignored(self, spec_file, tmp_path):
        """Appending blank lines and trailing spaces keeps the files equal."""
        noisy = "\n".join(line + "   " for line in SPEC.splitlines()) + "\n\n\n"
        generated = _write(tmp_path / "generated" / "spec.yaml", noisy.replace("\n", "\r\n"))
        assert compare(generated, spec_file).equal is True

    def test_single_character_change_detected(self, spec_file, tmp_path):
        """Changing one non-whitespace character makes them unequal."""
        generated = _write(
            tmp_path / "generated" / "spec.yaml", SPEC.replace("1.2.0", "1.2.1")
        )
        result = compare(generated, spec_file, name="openapi-yaml")

        assert result.equal is False
        assert result.name == "openapi-yaml"
        assert result.differing_files == ["spec.yaml"]
        assert "-  version: 1.2.0" in result.diff
        assert "+  version: 1.2.1" in result.diff
        assert "baseline/spec.yaml" in result.diff
        assert "generated/spec.yaml" in result.diff

    def test_ignore_patterns(self, spec_file, tmp_path):
        """Lines matching an ignore pattern do not count."""
        generated = _write(
            tmp_path / "generated" / "spec.yaml", SPEC.replace("1.2.0", "1.3.0")
        )
        assert compare(generated, spec_file).equal is False
        assert compare(generated, spec_file, ignore_patterns=[r"^\s+version:"]).equal

    def test_missing_generated(self, spec_file, tmp_path):
        """A missing generated file is a mismatch, not a crash."""
        result = compare(tmp_path / "nope.yaml", spec_file)
        assert result.equal is False
        assert "Missing generated" in result.diff

    def test_missing_baseline(self, spec_file, tmp_path):
        """A missing baseline is a mismatch."""
        result = compare(spec_file, tmp_path / "nope.yaml")
        assert result.equal is False
        assert "Missing baseline" in result.diff

    def test_file_against_directory(self, spec_file, tmp_path):
        """A file compared against a directory is a mismatch."""
        directory = tmp_path / "dir"
        directory.mkdir()
        assert compare(directory, spec_file).equal is False

    def test_read_only(self, spec_file, tmp_path):
        """Comparison never modifies either side."""
        generated = _write(tmp_path / "generated" / "spec.yaml", SPEC + "extra: 1\n")
        before = (generated.read_bytes(), spec_file.read_bytes())
        compare(generated, spec_file)
        assert (generated.read_bytes(), spec_file.read_bytes()) == before


class TestCompareDirectories:
    """Tests for compare on directory trees."""

    FILES = {
        "index.ts": "export * from './models';\n",
        "models/Account.ts": "export type Account = { address: string };\n",
    }

    def test_equal_trees(self, tmp_path):
        """Trees with equal files compare equal."""
        baseline = _make_tree(tmp_path / "baseline", self.FILES)
        generated = _make_tree(tmp_path / "generated", self.FILES)
        assert compare(generated, baseline).equal is True

    def test_extra_generated_file(self, tmp_path):
        """A file only in the generated tree is named in the diff."""
        baseline = _make_tree(tmp_path / "baseline", self.FILES)
        generated = _make_tree(
            tmp_path / "generated",
            {**self.FILES, "models/Event.ts": "export type Event = {};\n"},
        )
        result = compare(generated, baseline)

        assert result.equal is False
        assert result.differing_files == ["models/Event.ts"]
        assert "Only in generated: models/Event.ts" in result.diff

    def test_missing_generated_file(self, tmp_path):
        """A file only in the baseline tree is named in the diff."""
        baseline = _make_tree(tmp_path / "baseline", self.FILES)
        generated = _make_tree(tmp_path / "generated", {"index.ts": self.FILES["index.ts"]})
        result = compare(generated, baseline)

        assert result.differing_files == ["models/Account.ts"]
        assert "Only in baseline: models/Account.ts" in result.diff

    def test_changed_file_named(self, tmp_path):
        """A changed file is diffed with its relative path."""
        baseline = _make_tree(tmp_path / "baseline", self.FILES)
        generated = _make_tree(
            tmp_path / "generated",
            {**self.FILES, "models/Account.ts": "export type Account = { addr: string };\n"},
        )
        result = compare(generated, baseline)

        assert result.differing_files == ["models/Account.ts"]
        assert "baseline/models/Account.ts" in result.diff


class TestCheckArtifacts:
    """Tests for check_artifacts function."""

    def test_all_equal(self, spec_file, tmp_path):
        """Returns results when every artifact matches."""
        generated = _write(tmp_path / "generated" / "spec.yaml", SPEC)
        results = check_artifacts([TrackedArtifact("yaml", generated, spec_file)])
        assert [r.equal for r in results] == [True]

    def test_reports_every_mismatch(self, spec_file, tmp_path):
        """All mismatching artifacts are listed in one error, with hints."""
        json_baseline = _write(tmp_path / "baseline" / "spec.json", "{}\n")
        artifacts = [
            TrackedArtifact(
                "yaml",
                _write(tmp_path / "generated" / "spec.yaml", SPEC + "x: 1\n"),
                spec_file,
                regenerate_hint="cargo run -p gen -- -f yaml",
            ),
            TrackedArtifact(
                "json",
                _write(tmp_path / "generated" / "spec.json", '{"a": 1}\n'),
                json_baseline,
                regenerate_hint="cargo run -p gen -- -f json",
            ),
        ]

        with pytest.raises(ArtifactMismatchError) as exc_info:
            check_artifacts(artifacts, stage="compare-artifacts")

        error = exc_info.value
        assert [r.name for r in error.results] == ["yaml", "json"]
        assert error.hints == ["cargo run -p gen -- -f yaml", "cargo run -p gen -- -f json"]
        assert error.stage == "compare-artifacts"
        assert error.retryable is False
        assert "spec.json" in error.diff
        assert error.to_dict()["details"]["differing_files"] == ["spec.yaml", "spec.json"]

    def test_hints_only_for_mismatches(self, spec_file, tmp_path):
        """Hints of matching artifacts are not shown."""
        json_baseline = _write(tmp_path / "baseline" / "spec.json", "{}\n")
        artifacts = [
            TrackedArtifact(
                "yaml",
                _write(tmp_path / "generated" / "spec.yaml", SPEC),
                spec_file,
                regenerate_hint="yaml hint",
            ),
            TrackedArtifact(
                "json",
                _write(tmp_path / "generated" / "spec.json", "[]\n"),
                json_baseline,
                regenerate_hint="json hint",
            ),
        ]
        with pytest.raises(ArtifactMismatchError) as exc_info:
            check_artifacts(artifacts)
        assert exc_info.value.hints == ["json hint"]
