"""Tests for content fingerprints."""

from cimatrix.fingerprint import compute_fingerprint, resolve_globs


def make_repo(root):
    (root / "src").mkdir()
    (root / "src" / "lib.rs").write_text("fn main() {}\n")
    (root / "Cargo.toml").write_text("[package]\nname = 'x'\n")
    (root / "README.md").write_text("docs\n")
    return root


class TestComputeFingerprint:

    def test_stable_for_same_content(self, tmp_path):
        """Hashing twice gives the same fingerprint."""
        repo = make_repo(tmp_path)

        fp1, _ = compute_fingerprint(repo, ["src/**", "Cargo.toml"], ref="main")
        fp2, _ = compute_fingerprint(repo, ["src/**", "Cargo.toml"], ref="main")

        assert fp1 == fp2

    def test_changes_with_content(self, tmp_path):
        """Editing a tracked file changes the fingerprint."""
        repo = make_repo(tmp_path)
        before, _ = compute_fingerprint(repo, ["src/**"])

        (repo / "src" / "lib.rs").write_text("fn main() { panic!() }\n")
        after, _ = compute_fingerprint(repo, ["src/**"])

        assert before != after

    def test_ignores_files_outside_paths(self, tmp_path):
        """Edits outside the declared paths leave the fingerprint alone."""
        repo = make_repo(tmp_path)
        before, manifest = compute_fingerprint(repo, ["src/**", "Cargo.toml"])

        (repo / "README.md").write_text("more docs\n")
        after, _ = compute_fingerprint(repo, ["src/**", "Cargo.toml"])

        assert before == after
        assert manifest["file_count"] == 2

    def test_ref_is_part_of_fingerprint(self, tmp_path):
        """The same content on another branch does not match."""
        repo = make_repo(tmp_path)

        main, _ = compute_fingerprint(repo, ["src/**"], ref="main")
        feature, _ = compute_fingerprint(repo, ["src/**"], ref="feature")

        assert main != feature

    def test_history_dir_is_excluded(self, tmp_path):
        """Writing history under .cimatrix/ does not change the fingerprint."""
        repo = make_repo(tmp_path)
        before, _ = compute_fingerprint(repo)

        (repo / ".cimatrix").mkdir()
        (repo / ".cimatrix" / "history.json").write_text("{}")
        after, _ = compute_fingerprint(repo)

        assert before == after


class TestResolveGlobs:

    def test_reports_unmatched_patterns(self, tmp_path):
        """Patterns matching nothing are reported, not dropped silently."""
        repo = make_repo(tmp_path)

        paths, unmatched = resolve_globs(repo, ["Cargo.toml", "benches/**"])

        assert [p.name for p in paths] == ["Cargo.toml"]
        assert unmatched == ["benches/**"]
