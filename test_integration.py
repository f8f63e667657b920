import os
import shutil
import subprocess
from unittest.mock import patch

import pytest

import cvs2git
from test_cvs2git import SAMPLE_LOG


@pytest.fixture
def workspace(tmp_path):
    cvsdir = tmp_path / "proj"
    (cvsdir / "CVS").mkdir(parents=True)
    gitdir = tmp_path / "dest"
    gitdir.mkdir()
    log_file = tmp_path / "cvs.log"
    log_file.write_text(SAMPLE_LOG, encoding="utf-8")
    authors = tmp_path / "authors.txt"
    authors.write_text(
        "alice = Alice Smith <alice@example.com>\n"
        "bob = Bob Jones <bob@example.com>\n",
        encoding="utf-8",
    )
    return cvsdir, gitdir, log_file, authors


def fake_materialize(self, filename, revision, gitdir, binary=False, chmod=False):
    dest = os.path.join(gitdir, filename)
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    with open(dest, "w") as f:
        f.write(f"{filename} {revision}\n")


def git(gitdir, *args):
    return subprocess.check_output(["git", *args], cwd=gitdir, text=True).strip()


def test_dry_run_prints_commands(workspace, capsys):
    cvsdir, gitdir, log_file, authors = workspace
    cvs2git.main(
        [
            "--cvsdir", str(cvsdir),
            "--gitdir", str(gitdir),
            "--prefix", "/cvsroot/proj",
            "--log-file", str(log_file),
            "--authors-file", str(authors),
            "--dry-run",
        ]
    )
    captured = capsys.readouterr()
    lines = captured.out.splitlines()
    assert f"cvs update -p -r 1.1 main.c >{gitdir}/main.c" in lines
    assert "cvs update -r 1.1 lib/util.c" in lines
    assert "git rm -q -f lib/util.c" in lines
    assert sum(1 for line in lines if line.startswith("git commit")) == 3
    assert "Created 3 git commits" in captured.err
    # nothing was run
    assert os.listdir(gitdir) == []


def test_wrong_prefix_exits_non_zero(workspace, capsys):
    cvsdir, gitdir, log_file, _ = workspace
    with pytest.raises(SystemExit) as excinfo:
        cvs2git.main(
            [
                "--cvsdir", str(cvsdir),
                "--gitdir", str(gitdir),
                "--prefix", "/cvsroot/other",
                "--log-file", str(log_file),
                "--dry-run",
            ]
        )
    assert excinfo.value.code == 1
    assert "error: prefix '/cvsroot/other/proj/' not found" in capsys.readouterr().err


def test_unknown_authors_exit_non_zero(workspace, capsys):
    cvsdir, gitdir, log_file, _ = workspace
    with pytest.raises(SystemExit) as excinfo:
        cvs2git.main(
            [
                "--cvsdir", str(cvsdir),
                "--gitdir", str(gitdir),
                "--prefix", "/cvsroot/proj",
                "--log-file", str(log_file),
                "--no-unknown",
                "--dry-run",
            ]
        )
    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert err.count("Unknown authors found") == 1
    assert "alice bob" in err


def test_missing_cvs_dir(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cvs2git.main(["--cvsdir", str(tmp_path / "nope"), "--gitdir", str(tmp_path)])
    assert excinfo.value.code == 1
    assert "is not a CVS directory" in capsys.readouterr().err


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_convert_into_git_repository(workspace):
    cvsdir, gitdir, log_file, authors = workspace
    with patch.object(cvs2git.CvsCheckout, "materialize", fake_materialize):
        cvs2git.main(
            [
                "--cvsdir", str(cvsdir),
                "--gitdir", str(gitdir),
                "--prefix", "/cvsroot/proj",
                "--log-file", str(log_file),
                "--authors-file", str(authors),
                "--author-is-committer",
            ]
        )

    assert git(gitdir, "rev-list", "--count", "HEAD") == "3"
    assert git(gitdir, "ls-files").splitlines() == ["main.c"]
    assert (gitdir / "main.c").read_text() == "main.c 1.3\n"
    authors_log = git(gitdir, "log", "--pretty=format:%an <%ae> %at").splitlines()
    assert authors_log == [
        "Alice Smith (alice) <alice@example.com> 1299240010",
        "Bob Jones (bob) <bob@example.com> 1299056400",
        "Alice Smith (alice) <alice@example.com> 1298966400",
    ]
    assert git(gitdir, "log", "-n1", "--pretty=format:%s") == "Add feature"


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_squash_and_update(workspace):
    cvsdir, gitdir, log_file, authors = workspace
    common = [
        "--cvsdir", str(cvsdir),
        "--gitdir", str(gitdir),
        "--prefix", "/cvsroot/proj",
        "--log-file", str(log_file),
        "--authors-file", str(authors),
        "--author-is-committer",
    ]
    with patch.object(cvs2git.CvsCheckout, "materialize", fake_materialize):
        cvs2git.main(common + ["--squashdate", "2011-03-02 12:00:00 +0000", "--maxcommits", "0"])
        assert git(gitdir, "rev-list", "--count", "HEAD") == "2"
        first = git(gitdir, "log", "--reverse", "--pretty=format:%s").splitlines()[0]
        assert first == "CVS import: Initial squash-commit"

        # nothing newer than HEAD: no revision is converted again
        with patch.object(cvs2git.CvsCheckout, "update") as update:
            cvs2git.main(common + ["--update"])
        update.assert_called_once()
    assert git(gitdir, "rev-list", "--count", "HEAD") == "2"
    assert git(gitdir, "ls-files").splitlines() == ["main.c"]


def test_finisher_must_be_executable(workspace, capsys):
    cvsdir, gitdir, log_file, _ = workspace
    finisher = gitdir.parent / "finish.sh"
    finisher.write_text("#!/bin/sh\n")
    with pytest.raises(SystemExit) as excinfo:
        cvs2git.main(
            [
                "--cvsdir", str(cvsdir),
                "--gitdir", str(gitdir),
                "--log-file", str(log_file),
                "--finisher", str(finisher),
            ]
        )
    assert excinfo.value.code == 1
    assert "is not executable" in capsys.readouterr().err
    assert os.listdir(gitdir) == []


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_finisher_gets_dirs_and_commit_count(workspace):
    cvsdir, gitdir, log_file, authors = workspace
    out = gitdir.parent / "finisher.out"
    finisher = gitdir.parent / "finish.sh"
    finisher.write_text(f'#!/bin/sh\necho "$@" > "{out}"\n')
    finisher.chmod(0o755)
    with patch.object(cvs2git.CvsCheckout, "materialize", fake_materialize):
        cvs2git.main(
            [
                "--cvsdir", str(cvsdir),
                "--gitdir", str(gitdir),
                "--prefix", "/cvsroot/proj",
                "--log-file", str(log_file),
                "--authors-file", str(authors),
                "--author-is-committer",
                "--finisher", str(finisher),
            ]
        )
    assert out.read_text() == f"{cvsdir} {gitdir} 3\n"


def test_help_describes_maxcommits_with_squashdate(capsys):
    with pytest.raises(SystemExit):
        cvs2git.main(["--help"])
    out = " ".join(capsys.readouterr().out.split())
    assert "does not count towards --maxcommits" in out
    assert "no conversion at all" not in out
