import shutil
import subprocess

import pytest


class GitFixture:
    """A throwaway repository driven through the git command line."""

    def __init__(self, path):
        self.path = path
        self.path.mkdir()
        self.git("init", "-q")

    def git(self, *args):
        return subprocess.run(
            ["git", *args],
            cwd=self.path,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            universal_newlines=True,
        ).stdout.strip()

    def commit(self, filename="main.c", content="int main(void) { return 0; }\n"):
        (self.path / filename).write_text(content)
        self.git("add", filename)
        self.git("commit", "-q", "-m", f"update {filename}")

    def tag(self, name):
        self.git("tag", name)

    def short_hash(self):
        return self.git("rev-parse", "--short", "HEAD")


@pytest.fixture
def git_env(tmp_path, monkeypatch):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    for var in ("GIT_CONFIG_GLOBAL", "GIT_DIR", "GIT_WORK_TREE", "GIT_INDEX_FILE", "LANGUAGE"):
        monkeypatch.delenv(var, raising=False)
    for role in ("AUTHOR", "COMMITTER"):
        monkeypatch.setenv(f"GIT_{role}_NAME", "Firmware Builder")
        monkeypatch.setenv(f"GIT_{role}_EMAIL", "builder@example.com")
    return tmp_path


@pytest.fixture
def empty_repo(git_env):
    return GitFixture(git_env / "repo")


@pytest.fixture
def repo(empty_repo):
    empty_repo.commit()
    return empty_repo


@pytest.fixture
def tagged_repo(repo):
    repo.tag("v1.0.1")
    return repo
