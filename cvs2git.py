#!/usr/bin/env python3
"""
cvs2git.py

Convert the trunk history of a CVS working directory into git commits. The
output of `cvs log` is parsed to reconstruct multi-file commits, file contents
are fetched with `cvs update -p` and each reconstructed commit is recorded
with `git add`/`git rm`/`git commit` in the destination directory.

Usage:
    python3 cvs2git.py --cvsdir <cvs_dir> --gitdir <git_dir> [options]

Example:
    mkdir destrepo
    python3 cvs2git.py --cvsdir fnord --gitdir destrepo \\
        --prefix /cvsroot/fnord --authors-file authors.txt

CVS has no notion of a commit spanning several files: every file keeps its
own revision log. Revisions of different files are considered part of the
same commit when they share author, commit id (if CVS recorded one) and
commit message and were checked in within 15 seconds of each other.
"""
from __future__ import annotations
import argparse
import email.utils
import enum
import os
import re
import shlex
import shutil
import subprocess
import sys
import time
from typing import BinaryIO, Dict, Iterator, List, Optional, Set, Tuple

import dateutil.parser
import dateutil.tz

# ---------- Constants ----------

REVISION_SEPARATOR = "-" * 28
FILE_SEPARATOR = "=" * 77

DEAD = "dead"
UNKNOWN_COMMITID = "<unknown>"
UNKNOWN_EMAIL = "unknown"
KEY_SEPARATOR = "_|||_"

COMMIT_WINDOW = 15  # seconds
CHUNK_SIZE = 4096

# anything with more components is a branch revision
MAINLINE_REVISION = re.compile(r"^[0-9]+\.[0-9]+$")


# ---------- Errors ----------


class ConversionError(Exception):
    """Fatal condition, the conversion is aborted."""


class LogSyntaxError(ConversionError):
    pass


class PrefixError(ConversionError):
    def __init__(self, prefix: str, path: str):
        super().__init__(f"prefix '{prefix}' not found in '{path}'")
        self.prefix = prefix
        self.path = path


class UnknownAuthorsError(ConversionError):
    def __init__(self, authors: List[str]):
        super().__init__(
            "Unknown authors found:\n\t" + " ".join(authors) + "\nPlease fix!"
        )
        self.authors = list(authors)


class CommandError(ConversionError):
    def __init__(self, cmd: List[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr or ""
        msg = f"'{shlex.join(self.cmd)}' failed with status {returncode}"
        if self.stderr.strip():
            msg += f": {self.stderr.strip()}"
        super().__init__(msg)


class EmptyCommitError(ConversionError):
    def __init__(self, key: str):
        super().__init__(f"no files: {key}")
        self.key = key


# ---------- Utilities ----------


def decode_line(raw: bytes) -> str:
    """
    Old repositories mix UTF-8 and latin-1 log messages. Lines which are
    valid UTF-8 are kept as such, everything else is read as latin-1.
    """
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def parse_cvs_date(s: str) -> int:
    """
    Parse the date of a `cvs log` revision entry. Older CVS versions print
    `2011/03/04 12:00:00` (always UTC), newer ones `2011-03-04 12:00:00 +0000`.
    Returns unix timestamp (int).
    """
    try:
        dt = dateutil.parser.parse(s)
    except (ValueError, OverflowError) as e:
        raise LogSyntaxError(f"Invalid date in log: {s}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=dateutil.tz.tzutc())
    return int(dt.timestamp())


def parse_squash_date(s: str) -> int:
    """
    Parse a user supplied date. Dates without a time zone are taken to be in
    the local time zone.
    """
    try:
        dt = dateutil.parser.parse(s)
    except (ValueError, OverflowError) as e:
        raise ConversionError(f"Unable to parse date '{s}'") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=dateutil.tz.tzlocal())
    return int(dt.timestamp())


def format_date(epoch: int) -> str:
    return email.utils.formatdate(epoch, usegmt=True)


# leading bullet markers like "- ", "* ", "o ", "++"
BULLET = re.compile(r"^(?:[-+_*]{1,2}\s?|o\s)(?=[\w\"'])")


def trim_comment(comment: str) -> str:
    """
    Pick a one-line headline for the git commit out of a CVS comment.

    The first line having at least two words, or one word longer than nine
    characters not ending in a colon, is used; '...' is appended when more
    lines follow. The headline is limited to 50 characters.
    """
    headline: Optional[str] = None
    for line in comment.split("\n"):
        line = BULLET.sub("", line.strip())
        words = line.split()
        first_len = len(words[0]) if words else 0
        if headline is None:
            if len(words) >= 2 or (first_len > 9 and not line.endswith(":")):
                headline = line
        else:
            # comment continues
            headline = headline.rstrip() + "..."
            break

    if headline is None:
        headline = comment.strip().split("\n")[0].strip()

    if len(headline) > 50:
        headline = headline[:47].rstrip() + "..."
    return headline


AUTHOR_VALUE = re.compile(r"^(.*?)\s*<([^>]*)>\s*$")


def load_authors_file(fn: str) -> Dict[str, Tuple[str, str]]:
    """
    Read `login = Full Name <email>` lines. Blank lines and lines starting
    with '#' are ignored.
    """
    mapping: Dict[str, Tuple[str, str]] = {}
    try:
        with open(os.path.expanduser(fn), "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    sys.stderr.write(f"Warning: ignoring malformed author line: {line}\n")
                    continue
                uname, author = line.split("=", 1)
                uname = uname.strip()
                author = author.strip()
                m = AUTHOR_VALUE.match(author)
                if m:
                    identity = (m.group(1) or uname, m.group(2))
                else:
                    identity = (author, UNKNOWN_EMAIL)
                if uname in mapping:
                    sys.stderr.write(
                        f"Warning: username {uname} redefined to {author}\n"
                    )
                mapping[uname] = identity
    except FileNotFoundError:
        raise ConversionError(f"authors file {fn} not found")
    return mapping


class AuthorMap:
    """Maps CVS logins to git identities."""

    def __init__(self, mapping: Optional[Dict[str, Tuple[str, str]]] = None):
        self.mapping: Dict[str, Tuple[str, str]] = dict(mapping or {})

    @property
    def known(self) -> Set[str]:
        return set(self.mapping)

    def identity(self, login: str) -> Tuple[str, str]:
        if login not in self.mapping:
            return login, UNKNOWN_EMAIL
        name, mail = self.mapping[login]
        if name != login:
            name = f"{name} ({login})"
        return name, mail


# ---------- Log parsing ----------


class RevisionRecord:
    def __init__(
        self,
        filename: str,
        revision: str,
        tags: Optional[List[str]] = None,
        binary: bool = False,
    ):
        self.filename = filename  # path relative to the converted component
        self.revision = revision
        self.epoch: Optional[int] = None
        self.author: Optional[str] = None
        self.state: Optional[str] = None
        self.commitid: Optional[str] = None
        self.comment: List[str] = []
        self.tags: List[str] = list(tags or [])
        self.binary = binary

    def __repr__(self):
        return f"<RevisionRecord {self.filename}@{self.revision} author={self.author} epoch={self.epoch}>"


class ParserState(enum.Enum):
    START = 0
    INITIAL = 1
    RCS_FILE = 2
    SKIP_TO_TAGS = 3
    PROCESS_TAGS = 4
    SKIP_TO_REVISION = 5
    SKIP_TO_INFOS = 6
    SKIP_TO_BRANCH_INFO = 7
    BUILD_COMMIT_LOG = 8


class LogParser:
    """
    Streaming parser for `cvs log` output.

    The log is consumed in chunks of arbitrary size; only the trailing
    partial line and the revision currently being read are kept. Revision
    records are returned as soon as their terminating separator line is
    seen, in the order the log lists them: files in declaration order,
    newest revision first within a file.

    Unknown authors (when not allowed) are collected over the whole log and
    reported once by close().
    """

    RCS_FILE_LINE = re.compile(r"RCS file: (.*?),v")
    TAG_LINE = re.compile(r"^\t(.+): ([0-9.]+)")
    REVISION_LINE = re.compile(r"^revision (\S+)")
    BRANCHES_LINE = re.compile(r"^branches:(?:\s+[0-9.]+;)+\s*$")
    DATE_FIELD = re.compile(r"date: (\S+) (.*?);")
    AUTHOR_FIELD = re.compile(r"author: (.*?);")
    STATE_FIELD = re.compile(r"state: (.*?);")
    COMMITID_FIELD = re.compile(r"commitid: (.*?);")

    def __init__(
        self,
        prefix: Optional[str] = None,
        known_authors: Optional[Set[str]] = None,
        allow_unknown: bool = True,
        force_binary: bool = False,
        keep_blank_lines: bool = False,
    ):
        self.prefix = prefix
        self.known_authors = set(known_authors or ())
        self.allow_unknown = allow_unknown
        self.force_binary = force_binary
        self.keep_blank_lines = keep_blank_lines
        self.state = ParserState.START
        self.unknown_authors: Dict[str, None] = {}  # ordered set
        self._filename: Optional[str] = None
        self._binary = force_binary
        self._tags: Dict[str, List[str]] = {}  # revision -> tag names
        self._record: Optional[RevisionRecord] = None
        self._rest = b""

    def normalize_filename(self, path: str) -> str:
        filename = path.replace("/Attic/", "/", 1)
        if self.prefix is not None:
            index = filename.find(self.prefix)
            if index < 0:
                raise PrefixError(self.prefix, filename)
            filename = filename[:index] + filename[index + len(self.prefix) :]
        return filename

    def step(self, line: str) -> Optional[RevisionRecord]:
        """
        Advance the state machine by one line (without line terminator).
        Returns the completed RevisionRecord if this line finished one.
        """
        state = self.state

        if state in (ParserState.START, ParserState.INITIAL):
            if line == "":
                self.state = ParserState.RCS_FILE
            elif state is ParserState.START and line.startswith("? "):
                pass  # untracked file
            else:
                raise LogSyntaxError(f"Invalid input in state {state.name}: {line}")

        elif state is ParserState.RCS_FILE:
            m = self.RCS_FILE_LINE.search(line)
            if not m:
                raise LogSyntaxError(f"Invalid input in state RCS_FILE: {line}")
            self._filename = self.normalize_filename(m.group(1))
            self._tags = {}
            self._binary = self.force_binary
            self.state = ParserState.SKIP_TO_TAGS

        elif state is ParserState.SKIP_TO_TAGS:
            if line.startswith("symbolic names:"):
                self.state = ParserState.PROCESS_TAGS

        elif state is ParserState.PROCESS_TAGS:
            m = self.TAG_LINE.match(line)
            if m:
                name, rev = m.groups()
                # branch tags are of no interest
                if MAINLINE_REVISION.match(rev):
                    self._tags.setdefault(rev, []).insert(0, name)
            elif line.startswith("keyword substitution: b"):
                self._binary = True
            elif line == REVISION_SEPARATOR:
                self.state = ParserState.SKIP_TO_REVISION
            elif line == FILE_SEPARATOR:
                # no revision selected for this file
                self.state = ParserState.INITIAL

        elif state is ParserState.SKIP_TO_REVISION:
            m = self.REVISION_LINE.match(line)
            if m:
                rev = m.group(1)
                self._record = RevisionRecord(
                    self._filename, rev, self._tags.get(rev), self._binary
                )
                self.state = ParserState.SKIP_TO_INFOS

        elif state is ParserState.SKIP_TO_INFOS:
            self._read_infos(line)
            self.state = ParserState.SKIP_TO_BRANCH_INFO

        elif state is ParserState.SKIP_TO_BRANCH_INFO:
            if line in (REVISION_SEPARATOR, FILE_SEPARATOR):
                return self._finish_revision(line)
            self.state = ParserState.BUILD_COMMIT_LOG
            if not self.BRANCHES_LINE.match(line):
                self._append_comment(line)

        elif state is ParserState.BUILD_COMMIT_LOG:
            if line in (REVISION_SEPARATOR, FILE_SEPARATOR):
                return self._finish_revision(line)
            self._append_comment(line)

        return None

    def _read_infos(self, line: str):
        record = self._record
        m = self.DATE_FIELD.search(line)
        if not m:
            raise LogSyntaxError(
                f"No date for {record.filename} revision {record.revision}: {line}"
            )
        record.epoch = parse_cvs_date(f"{m.group(1)} {m.group(2)}")

        m = self.AUTHOR_FIELD.search(line)
        if m:
            record.author = m.group(1)
            if not self.allow_unknown and record.author not in self.known_authors:
                self.unknown_authors.setdefault(record.author)

        m = self.STATE_FIELD.search(line)
        if m:
            record.state = m.group(1)
        m = self.COMMITID_FIELD.search(line)
        if m:
            record.commitid = m.group(1)

    def _append_comment(self, line: str):
        if self.keep_blank_lines or line.strip():
            self._record.comment.append(line)

    def _finish_revision(self, separator: str) -> RevisionRecord:
        record = self._record
        self._record = None
        comment = record.comment
        while comment and not comment[-1].strip():
            comment.pop()
        while comment and not comment[0].strip():
            comment.pop(0)
        if separator == REVISION_SEPARATOR:
            self.state = ParserState.SKIP_TO_REVISION
        else:
            self.state = ParserState.INITIAL
        return record

    def feed(self, chunk: bytes) -> List[RevisionRecord]:
        data = self._rest + chunk
        lines = data.split(b"\n")
        self._rest = lines.pop()
        records = []
        for raw in lines:
            record = self.step(decode_line(raw))
            if record is not None:
                records.append(record)
        return records

    def close(self) -> List[RevisionRecord]:
        records = []
        if self._rest:
            record = self.step(decode_line(self._rest))
            self._rest = b""
            if record is not None:
                records.append(record)
        if self.state not in (
            ParserState.START,
            ParserState.INITIAL,
            ParserState.RCS_FILE,
        ):
            raise LogSyntaxError(f"Unexpected end of log in state {self.state.name}")
        if self.unknown_authors:
            raise UnknownAuthorsError(list(self.unknown_authors))
        return records

    def parse(
        self, stream: BinaryIO, chunk_size: int = CHUNK_SIZE
    ) -> Iterator[RevisionRecord]:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield from self.feed(chunk)
        yield from self.close()


# ---------- Commit grouping ----------


def commit_key(epoch: int, commitid: str, author: str) -> str:
    # epochs before Sep 9 2001 have less than 10 digits, the padding keeps
    # string order equal to chronological order
    return f"{epoch:010d}{KEY_SEPARATOR}{commitid}{KEY_SEPARATOR}{author}"


def split_commit_key(key: str) -> Tuple[int, str, str]:
    epoch, commitid, author = key.split(KEY_SEPARATOR)[:3]
    return int(epoch), commitid, author


class FileChange:
    def __init__(
        self,
        revision: str,
        filename: str,
        tags: Optional[List[str]] = None,
        binary: bool = False,
    ):
        self.revision = revision
        self.filename = filename
        self.tags = list(tags or [])
        self.binary = binary

    def __repr__(self):
        return f"<FileChange {self.filename}@{self.revision}>"


class CommitObject:
    def __init__(self, key: str, epoch: int, commitid: str, author: str, comment: str):
        self.key = key
        self.epoch = epoch
        self.commitid = commitid
        self.author = author
        self.comment = comment
        self.date = format_date(epoch)
        self.files: List[FileChange] = []

    def __repr__(self):
        return f"<CommitObject {self.key} files={len(self.files)}>"


class CommitGrouper:
    """
    Folds revision records into commits.

    A record joins an existing commit when a commit with the same commit id
    and author exists within `window` seconds of the record's date and has
    the very same comment. Candidates are scanned from -window to +window,
    the first hit wins; otherwise a new commit is keyed on the record's own
    date. Two different comments on the same key get separate commits, the
    later one keyed with a serial suffix.
    """

    def __init__(self, window: int = COMMIT_WINDOW, watermark: int = 0):
        self.window = window
        self.watermark = watermark  # skip everything up to this epoch
        self.commits: Dict[str, CommitObject] = {}
        self.tags: Dict[str, int] = {}  # tag -> earliest epoch
        self._buckets: Dict[str, List[CommitObject]] = {}

    def __len__(self):
        return len(self.commits)

    def _find(self, epoch: int, commitid: str, author: str, comment: str):
        for offset in range(-self.window, self.window + 1):
            key = commit_key(epoch + offset, commitid, author)
            for commit in self._buckets.get(key, ()):
                if commit.comment == comment:
                    return commit
        return None

    def _create(self, epoch: int, commitid: str, author: str, comment: str):
        base = commit_key(epoch, commitid, author)
        bucket = self._buckets.setdefault(base, [])
        key = base
        if bucket:
            key = f"{base}{KEY_SEPARATOR}{len(bucket) + 1}"
        commit = CommitObject(key, epoch, commitid, author, comment)
        bucket.append(commit)
        self.commits[key] = commit
        return commit

    def add(self, record: RevisionRecord) -> Optional[CommitObject]:
        if not MAINLINE_REVISION.match(record.revision):
            # branch revision
            return None
        if self.watermark and record.epoch <= self.watermark:
            return None

        if record.state == DEAD:
            record.revision = DEAD
        if record.commitid is None:
            record.commitid = UNKNOWN_COMMITID
        author = record.author or "unknown"
        comment = "\n".join(record.comment)
        epoch = record.epoch

        commit = self._find(epoch, record.commitid, author, comment)
        if commit is None:
            commit = self._create(epoch, record.commitid, author, comment)

        commit.files.insert(
            0, FileChange(record.revision, record.filename, record.tags, record.binary)
        )

        for tag in record.tags:
            seen = self.tags.get(tag)
            if seen is None or epoch < seen:
                self.tags[tag] = epoch
        return commit

    def sorted_commits(self) -> List[CommitObject]:
        return [self.commits[key] for key in sorted(self.commits)]


# ---------- External commands ----------


class CommandRunner:
    """
    Runs external commands. With `verbose` every command is echoed to
    stdout, with `dry_run` nothing is executed at all.
    """

    def __init__(self, verbose: bool = False, dry_run: bool = False):
        self.verbose = verbose or dry_run
        self.dry_run = dry_run

    def echo(self, text: str):
        if self.verbose:
            print(text)

    def run(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stdout_path: Optional[str] = None,
        input: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        self.echo(shlex.join(cmd) + (f" >{stdout_path}" if stdout_path else ""))
        if self.dry_run:
            return subprocess.CompletedProcess(cmd, 0, "", "")

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        if stdout_path:
            with open(stdout_path, "wb") as out:
                proc = subprocess.run(
                    cmd, cwd=cwd, env=full_env, stdout=out, stderr=subprocess.PIPE
                )
            result = subprocess.CompletedProcess(
                cmd, proc.returncode, "", proc.stderr.decode("utf-8", "replace")
            )
        else:
            result = subprocess.run(
                cmd, cwd=cwd, env=full_env, input=input, capture_output=True, text=True
            )
        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)
        return result


class RetryPolicy:
    """
    Decides whether a failed `cvs update` is worth another try. Only the
    transient pserver error matching `pattern` is retried; `max_attempts`
    of 0 retries forever.
    """

    TRANSIENT = re.compile(r"anoncvs_.*?: no such system user")

    def __init__(
        self,
        max_attempts: int = 0,
        delay: float = 1.0,
        pattern: Optional[re.Pattern] = None,
    ):
        self.max_attempts = max_attempts
        self.delay = delay
        self.pattern = pattern or self.TRANSIENT

    def should_retry(self, attempt: int, stderr: str) -> bool:
        if not self.pattern.search(stderr or ""):
            return False
        return not self.max_attempts or attempt < self.max_attempts


class CvsCheckout:
    def __init__(
        self,
        cvsdir: str,
        runner: CommandRunner,
        retry: Optional[RetryPolicy] = None,
    ):
        self.cvsdir = cvsdir
        self.runner = runner
        self.retry = retry or RetryPolicy()

    def update(self):
        self.runner.run(["cvs", "up"], cwd=self.cvsdir)

    def read_log(self, parser: LogParser) -> Iterator[RevisionRecord]:
        """Stream `cvs log` of the trunk through `parser`."""
        cmd = ["cvs", "log", "-r1"]
        self.runner.echo(shlex.join(cmd))
        with subprocess.Popen(
            cmd, cwd=self.cvsdir, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL
        ) as proc:
            yield from parser.parse(proc.stdout)
        if proc.returncode:
            raise CommandError(cmd, proc.returncode)

    def materialize(
        self,
        filename: str,
        revision: str,
        gitdir: str,
        binary: bool = False,
        chmod: bool = False,
    ):
        """
        Write `filename` at `revision` into `gitdir`. Text files are printed
        by cvs straight into the destination; binary files are updated in the
        CVS working directory (sticky) and copied from there.
        """
        dest = os.path.join(gitdir, filename)
        source = os.path.join(self.cvsdir, filename)
        directory = os.path.dirname(dest)
        self.runner.echo(f"mkdir {directory}")
        if not self.runner.dry_run:
            os.makedirs(directory, exist_ok=True)

        if binary:
            cmd = ["cvs", "update", "-r", revision, filename]
            stdout_path = None
        else:
            cmd = ["cvs", "update", "-p", "-r", revision, filename]
            stdout_path = dest

        attempt = 1
        while True:
            result = self.runner.run(
                cmd, cwd=self.cvsdir, stdout_path=stdout_path, check=False
            )
            if result.returncode == 0:
                break
            if not self.retry.should_retry(attempt, result.stderr):
                raise CommandError(cmd, result.returncode, result.stderr)
            attempt += 1
            sys.stderr.write(f"Retrying cvs update of {filename} (attempt {attempt})\n")
            time.sleep(self.retry.delay)

        if binary:
            self.runner.echo(f"cp {source} {dest}")
            if not self.runner.dry_run:
                shutil.copy(source, dest)

        if chmod:
            try:
                mode = os.stat(source).st_mode & 0o777
            except FileNotFoundError:
                mode = 0o644
            self.runner.echo(f"chmod {mode:o} {dest}")
            if not self.runner.dry_run:
                os.chmod(dest, mode)


class GitRepository:
    def __init__(self, gitdir: str, runner: CommandRunner):
        self.gitdir = gitdir
        self.runner = runner

    def is_initialized(self) -> bool:
        result = subprocess.run(
            ["git", "--git-dir", os.path.join(self.gitdir, ".git"), "rev-parse"],
            capture_output=True,
        )
        return result.returncode == 0

    def ensure_initialized(self):
        if not self.is_initialized():
            self.runner.run(["git", "init", "-q"], cwd=self.gitdir)

    def remove(self, filename: str):
        self.runner.run(["git", "rm", "-q", "-f", filename], cwd=self.gitdir)

    def add_all(self):
        self.runner.run(["git", "add", "."], cwd=self.gitdir)

    def commit(self, message: str, env: Dict[str, str]):
        # commits that only touch keyword lines may leave the tree unchanged
        self.runner.run(
            ["git", "commit", "-q", "--allow-empty", "-F", "-"],
            cwd=self.gitdir,
            env=env,
            input=message,
        )

    def head_epoch(self) -> int:
        cmd = ["git", "log", "-n1", "--pretty=format:%at", "HEAD"]
        result = subprocess.run(cmd, cwd=self.gitdir, capture_output=True, text=True)
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)
        return int(result.stdout.strip())

    def tracked_files(self) -> List[str]:
        cmd = ["git", "ls-files", "-z"]
        result = subprocess.run(cmd, cwd=self.gitdir, capture_output=True, text=True)
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)
        return [f for f in result.stdout.split("\0") if f]


# ---------- Commit emission ----------


class ClassifiedCommit:
    def __init__(self, commit: CommitObject):
        self.commit = commit
        self.added: Dict[str, FileChange] = {}
        self.updated: Dict[str, FileChange] = {}
        self.removed: Dict[str, str] = {}  # filename -> last revision

    def message(self, author: str) -> str:
        commit = self.commit
        comment = "\n".join("    " + line for line in commit.comment.split("\n"))
        msg = (
            f"{trim_comment(commit.comment)}\n"
            f"\n"
            f"CVS import: {author}, {commit.date}\n"
            f"\n"
            f"original comment:\n{comment}\n"
            f"\n"
            f"Files:\n"
        )
        for filename in sorted(self.added):
            msg += f"\tadded:    {filename} -> {self.added[filename].revision}\n"
        for filename in sorted(self.updated):
            msg += f"\tupdated:  {filename} -> {self.updated[filename].revision}\n"
        for filename in sorted(self.removed):
            msg += f"\tremoved:  {filename}\n"
        return msg


class SquashAggregate:
    """Commits folded into the initial squash commit."""

    def __init__(self):
        self.start: Optional[int] = None
        self.end: Optional[int] = None
        self.count = 0
        self.authors: Dict[str, int] = {}
        self.files: Dict[str, FileChange] = {}
        # files of an existing tree (--update) deleted while squashing
        self.removed: Set[str] = set()

    def add_commit(self, author: str, epoch: int):
        if self.start is None:
            self.start = epoch
        self.end = epoch
        self.count += 1
        self.authors[author] = self.authors.get(author, 0) + 1

    def sorted_authors(self) -> List[Tuple[str, int]]:
        # stable: equal counts keep the order authors were first seen in
        return sorted(self.authors.items(), key=lambda item: -item[1])

    def author(self) -> str:
        if len(self.authors) == 1:
            return next(iter(self.authors))
        return "various artists"

    def message(self) -> str:
        msg = (
            "CVS import: Initial squash-commit\n"
            "\n"
            f"This commit squashes {self.count} commit(s) starting from\n"
            f"{format_date(self.start)} ending {format_date(self.end)}\n"
            "into a single commit to simplify git history.\n"
            "\n"
            "Commits of the following authors (in order of number):\n"
        )
        for author, count in self.sorted_authors():
            msg += f"\t{author}: {count}\n"
        msg += "\nFiles:\n"
        for filename in sorted(self.files):
            msg += f"\tadded:    {filename} -> {self.files[filename].revision}\n"
        for filename in sorted(self.removed):
            msg += f"\tremoved:  {filename}\n"
        return msg


class CommitEmitter:
    """
    Replays grouped commits, oldest first, as git commits.

    Every file's last known revision is tracked over the whole run to tell
    added, updated and removed files apart. Commits dated up to and including
    `squash_date` are folded into a single squash commit, created right
    before the first commit past that date (or at the end). `max_commits`
    stops the run after that many regular commits.
    """

    def __init__(
        self,
        checkout: CvsCheckout,
        repository: GitRepository,
        authors: Optional[AuthorMap] = None,
        squash_date: int = 0,
        max_commits: int = 0,
        baseline: Optional[Dict[str, str]] = None,
        squash_email: str = UNKNOWN_EMAIL,
        author_is_committer: bool = False,
    ):
        self.checkout = checkout
        self.repository = repository
        self.authors = authors or AuthorMap()
        self.squash_date = squash_date
        self.max_commits = max_commits
        self.squash_email = squash_email
        self.author_is_committer = author_is_committer
        self.revisions: Dict[str, str] = dict(baseline or {})
        self.tracked: Set[str] = set(self.revisions)

    def classify(
        self, commit: CommitObject, squashed: Optional[SquashAggregate] = None
    ) -> ClassifiedCommit:
        if not commit.files:
            raise EmptyCommitError(commit.key)
        result = ClassifiedCommit(commit)
        for change in commit.files:
            filename = change.filename
            if filename not in self.revisions:
                if change.revision == DEAD:
                    # born and deleted outside the trunk
                    continue
                self.revisions[filename] = change.revision
                result.added[filename] = change
                if squashed is not None:
                    squashed.files[filename] = change
                    squashed.removed.discard(filename)
            elif change.revision == DEAD:
                result.removed[filename] = self.revisions.pop(filename)
                if squashed is not None:
                    squashed.files.pop(filename, None)
                    # only files already in the git tree need a 'git rm'
                    if filename in self.tracked:
                        squashed.removed.add(filename)
            else:
                self.revisions[filename] = change.revision
                result.updated[filename] = change
                if squashed is not None:
                    squashed.files[filename] = change
        return result

    def environment(self, name: str, mail: str, date: str) -> Dict[str, str]:
        env = {
            "GIT_AUTHOR_DATE": date,
            "GIT_AUTHOR_NAME": name,
            "GIT_AUTHOR_EMAIL": mail,
            "GIT_COMMITTER_DATE": date,
        }
        if self.author_is_committer:
            env["GIT_COMMITTER_NAME"] = name
            env["GIT_COMMITTER_EMAIL"] = mail
        return env

    def create_squash_commit(self, squashed: SquashAggregate):
        gitdir = self.repository.gitdir
        for filename in sorted(squashed.files):
            change = squashed.files[filename]
            self.checkout.materialize(
                filename, change.revision, gitdir, change.binary, chmod=True
            )
        for filename in sorted(squashed.removed):
            self.repository.remove(filename)
        self.repository.add_all()
        self.repository.commit(
            squashed.message(),
            self.environment(
                squashed.author(), self.squash_email, format_date(squashed.end)
            ),
        )

    def create_regular_commit(self, classified: ClassifiedCommit):
        commit = classified.commit
        gitdir = self.repository.gitdir
        name, mail = self.authors.identity(commit.author)

        for filename in sorted(classified.added):
            change = classified.added[filename]
            self.checkout.materialize(
                filename, change.revision, gitdir, change.binary, chmod=True
            )
        for filename in sorted(classified.updated):
            change = classified.updated[filename]
            self.checkout.materialize(
                filename, change.revision, gitdir, change.binary, chmod=False
            )
        for filename in sorted(classified.removed):
            self.repository.remove(filename)
        self.repository.add_all()
        self.repository.commit(
            classified.message(name), self.environment(name, mail, commit.date)
        )

    def emit(self, commits: Dict[str, CommitObject]) -> int:
        """
        Create git commits for `commits` (commit key -> CommitObject) in key
        order. Returns the number of git commits created.
        """
        total = len(commits)
        if self.max_commits:
            sys.stderr.write(
                f"Processing at most {self.max_commits} of the {total} total commits\n"
            )
        else:
            sys.stderr.write(f"Processing {total} commits\n")

        created = 0
        regular = 0
        squashed: Optional[SquashAggregate] = None

        for index, key in enumerate(sorted(commits), 1):
            commit = commits[key]
            if not commit.files:
                raise EmptyCommitError(key)
            name, _ = self.authors.identity(commit.author)

            if commit.epoch <= self.squash_date:
                sys.stderr.write(f"Skipping commit {index}/{total}\n")
                if squashed is None:
                    squashed = SquashAggregate()
                squashed.add_commit(name, commit.epoch)
                self.classify(commit, squashed)
                continue

            sys.stderr.write(f"Processing commit {index}/{total}\n")
            if squashed is not None:
                self.create_squash_commit(squashed)
                squashed = None
                created += 1

            self.create_regular_commit(self.classify(commit))
            created += 1
            regular += 1
            if self.max_commits and regular >= self.max_commits:
                return created

        # every commit was up to the squash date
        if squashed is not None:
            self.create_squash_commit(squashed)
            created += 1
        return created


# ---------- High-level flow ----------


def convert(args: argparse.Namespace) -> int:
    if args.finisher and not os.access(args.finisher, os.X_OK):
        raise ConversionError(f"finisher script '{args.finisher}' is not executable!")

    cvsdir = os.path.abspath(args.cvsdir)
    if not os.path.isdir(os.path.join(cvsdir, "CVS")):
        raise ConversionError(
            f"Source CVS dir {cvsdir} does not exist or is not a CVS directory!"
        )
    gitdir = os.path.abspath(args.gitdir)
    if not os.path.isdir(gitdir):
        raise ConversionError(f"Destination git dir {gitdir} does not exist!")

    runner = CommandRunner(verbose=args.debug, dry_run=args.dry_run)
    repository = GitRepository(gitdir, runner)
    if not args.dry_run:
        repository.ensure_initialized()

    squash_date = parse_squash_date(args.squashdate) if args.squashdate else 0
    authors = AuthorMap(load_authors_file(args.authors_file) if args.authors_file else {})
    checkout = CvsCheckout(cvsdir, runner, RetryPolicy(max_attempts=args.retries))

    watermark = 0
    baseline: Dict[str, str] = {}
    if args.update:
        watermark = repository.head_epoch()
        baseline = {filename: "unknown" for filename in repository.tracked_files()}
        sys.stderr.write(f"Updating commits after {format_date(watermark)}\n")
        checkout.update()

    component = os.path.basename(cvsdir)
    sys.stderr.write(f"Converting component {component} in directory {cvsdir}\n")
    prefix = ""
    if args.prefix:
        prefix = args.prefix if args.prefix.endswith("/") else args.prefix + "/"
    prefix += component + "/"

    parser = LogParser(
        prefix=prefix,
        known_authors=authors.known,
        allow_unknown=not args.no_unknown,
        force_binary=args.force_binary,
        keep_blank_lines=args.keep_blank_lines,
    )
    grouper = CommitGrouper(watermark=watermark)
    if args.log_file:
        with open(args.log_file, "rb") as stream:
            for record in parser.parse(stream):
                grouper.add(record)
    else:
        for record in checkout.read_log(parser):
            grouper.add(record)
    sys.stderr.write(f"Processed {len(grouper)} commits\n")
    if args.debug:
        for tag in sorted(grouper.tags):
            sys.stderr.write(f"  tag {tag} first seen {format_date(grouper.tags[tag])}\n")

    emitter = CommitEmitter(
        checkout,
        repository,
        authors,
        squash_date=squash_date,
        max_commits=args.maxcommits,
        baseline=baseline,
        squash_email=args.squash_email,
        author_is_committer=args.author_is_committer,
    )
    count = emitter.emit(grouper.commits)
    sys.stderr.write(f"Created {count} git commits\n")

    if args.finisher:
        runner.run([args.finisher, cvsdir, gitdir, str(count)])
    return count


# ---------- CLI ----------

NOTES = """\
notes:
  cvs_dir is a working directory holding the component to convert. It must
  exist and should be up to date; --update runs 'cvs up' before converting.

  The string given with --prefix, followed by the name of cvs_dir, is removed
  from each RCS file path. With '--cvsdir fnord --prefix /cvsroot/fnord',
  /cvsroot/fnord/fnord/ is removed. If it is not found in an RCS file path
  the conversion stops.

  The squash commit made for --squashdate does not count towards
  --maxcommits, so both can be combined.

  The finisher is called with cvs_dir, git_dir and the number of commits as
  arguments, e.g. to repack the git repository.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert the CVS component in cvs_dir and store all commits in git_dir.",
        epilog=NOTES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--cvsdir", required=True, help="CVS working directory to convert"
    )
    parser.add_argument(
        "--gitdir", required=True, help="git destination directory (must exist)"
    )
    parser.add_argument("--prefix", help="prefix to cut off from CVS paths")
    parser.add_argument(
        "--maxcommits",
        type=int,
        default=0,
        help="stop conversion after this number of commits",
    )
    parser.add_argument(
        "--squashdate", help="squash all commits up to this date into a single one"
    )
    parser.add_argument(
        "--finisher", help="script to run in the end with cvs_dir, git_dir and count"
    )
    parser.add_argument(
        "--authors-file", "-A", help="file with `login = Full Name <email>` mappings"
    )
    parser.add_argument(
        "--no-unknown",
        action="store_true",
        help="do not allow authors missing from the authors file",
    )
    parser.add_argument(
        "--force-binary",
        action="store_true",
        help="treat all files as binary (no keyword substitution)",
    )
    parser.add_argument(
        "--update",
        action="store_true",
        help="update a repository converted before, starting after its HEAD",
    )
    parser.add_argument(
        "--log-file", help="read `cvs log` output from this file instead of running cvs"
    )
    parser.add_argument(
        "--keep-blank-lines",
        action="store_true",
        help="keep blank lines inside commit messages",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=0,
        help="attempts for transient cvs update failures (default 0: no limit)",
    )
    parser.add_argument(
        "--author-is-committer", action="store_true", help="use author as committer"
    )
    parser.add_argument(
        "--squash-email",
        default=UNKNOWN_EMAIL,
        help="email address used for the squash commit",
    )
    parser.add_argument(
        "--debug", action="store_true", help="print every command that is run"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="simulate the conversion, print commands instead of running them",
    )
    return parser


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)
    try:
        convert(args)
    except ConversionError as e:
        sys.stderr.write(f"error: {e}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
