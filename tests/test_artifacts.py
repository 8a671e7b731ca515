"""Tests for artifact collection."""

from pipewright.artifacts import ArtifactCollector, stage_slug


class TestArtifactCollector:
    def test_slug(self):
        assert stage_slug("Unit Tests (node 20)") == "unit-tests--node-20"
        assert stage_slug("***") == "stage"

    def test_directory_and_glob_patterns(self, tmp_path):
        work = tmp_path / "work"
        (work / "dist" / "assets").mkdir(parents=True)
        (work / "dist" / "main.js").write_text("a", encoding="utf-8")
        (work / "dist" / "assets" / "logo.svg").write_text("b", encoding="utf-8")
        (work / "coverage-summary.json").write_text("{}", encoding="utf-8")

        collected = ArtifactCollector(tmp_path / "out").collect("Build", ["dist", "*.json"], work)

        assert collected == [
            "build/coverage-summary.json",
            "build/dist/assets/logo.svg",
            "build/dist/main.js",
        ]
        assert (tmp_path / "out" / "build" / "dist" / "assets" / "logo.svg").read_text(encoding="utf-8") == "b"

    def test_unmatched_pattern_collects_nothing(self, tmp_path):
        assert ArtifactCollector(tmp_path / "out").collect("Build", ["missing/**"], tmp_path) == []
        assert not (tmp_path / "out").exists()
