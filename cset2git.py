#!/usr/bin/env python3
"""
cset2git.py

Feed changesets into `git fast-import`, extending an existing repository
incrementally without rewriting its history.

A changeset producer drives a GitDestination session:

    dest = GitDestination("/path/to/repo")
    dest.open()
    dest.select_branch("master")
    dest.update("a.txt", b"hi", 0o644, 0, 0, rev)
    dest.commit("alice", 1700000000, "add a.txt", [rev])
    dest.finish()

Usage (command line):
    python3 cset2git.py last-date /path/to/repo
    python3 cset2git.py ls-files /path/to/repo [branch] [--all]
    python3 cset2git.py import /path/to/repo changesets.jsonl [-- fast-import args]
"""
from __future__ import annotations
import argparse
import base64
import datetime
import json
import os
import re
import subprocess
import sys
from typing import Callable, Dict, Iterable, List, Optional, Union

UTC = datetime.timezone.utc
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=UTC)

# marker for filelist(): union over every known branch
COMPLETE = "<complete>"

# ---------- Errors ----------


class BridgeError(Exception):
    pass


class SetupError(BridgeError):
    """The target path is not a git repository."""


class SpawnError(BridgeError):
    """A git executable could not be started."""


class DuplicateBranchError(BridgeError):
    pass


class MalformedOutputError(BridgeError):
    """A read query failed or printed something we cannot parse."""


class ImporterFailed(BridgeError):
    def __init__(self, returncode: int):
        super().__init__(f"git fast-import did not succeed (exit status {returncode})")
        self.returncode = returncode


# ---------- Utilities ----------

_NEEDS_QUOTE = re.compile(r'[\\\n]|^"')
_QUOTED_CHARS = re.compile(r'[\\\n"]')
_ESCAPE = re.compile(rb'\\([0-7]{3}|[\\"abtnvfr])')
_C_ESCAPES = {
    b"\\": 0x5C,
    b'"': 0x22,
    b"a": 0x07,
    b"b": 0x08,
    b"t": 0x09,
    b"n": 0x0A,
    b"v": 0x0B,
    b"f": 0x0C,
    b"r": 0x0D,
}


def quote_path(path: str) -> str:
    """
    Quote a path the way fast-import expects it.
    Paths with a backslash or newline (or a leading double quote) are
    wrapped in double quotes with those characters written as octal
    escapes; everything else passes through untouched.
    """
    if not _NEEDS_QUOTE.search(path):
        return path
    return '"' + _QUOTED_CHARS.sub(lambda m: "\\%03o" % ord(m.group()), path) + '"'


def unquote_path(path: str) -> str:
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    raw = path[1:-1].encode("utf-8", "surrogateescape")

    def _byte(m):
        esc = m.group(1)
        if len(esc) == 3:
            return bytes([int(esc, 8)])
        return bytes([_C_ESCAPES[esc]])

    return _ESCAPE.sub(_byte, raw).decode("utf-8", "surrogateescape")


def normalize_mode(mode: int) -> int:
    """Map file permission bits onto 100644 or 100755."""
    # Fix up mode for git
    if mode & 0o111:
        mode |= 0o111
    mode &= ~0o022
    mode |= 0o644
    return 0o100000 | (mode & 0o755)


def fix_author(author: str) -> str:
    if re.search(r"<.+>", author):
        return author
    # fake email address
    return f"{author} <{author}>"


def to_timestamp(date: Union[int, float, datetime.datetime]) -> int:
    if isinstance(date, datetime.datetime):
        if date.tzinfo is None:
            date = date.replace(tzinfo=UTC)
        return int(date.timestamp())
    return int(date)


def _as_bytes(data: Union[str, bytes]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8", "surrogateescape")
    return bytes(data)


def _text(out: bytes) -> str:
    return out.decode("utf-8", "surrogateescape")


# ---------- git processes ----------


class ImporterProcess:
    """Write side of a running `git fast-import`."""

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc

    def write(self, data: bytes):
        try:
            self.proc.stdin.write(data)
        except BrokenPipeError:
            raise self._died() from None

    def flush(self):
        try:
            self.proc.stdin.flush()
        except BrokenPipeError:
            raise self._died() from None

    def close_write(self):
        try:
            self.proc.stdin.close()
        except BrokenPipeError:
            raise self._died() from None

    def _died(self) -> ImporterFailed:
        # fast-import went away; buffered commands are lost
        try:
            self.proc.stdin.close()
        except BrokenPipeError:
            pass
        return ImporterFailed(self.proc.wait())

    def wait(self) -> int:
        return self.proc.wait()

    def kill(self):
        self.proc.kill()
        self.proc.wait()


class GitRunner:
    """Spawns git with GIT_DIR pointing at the target repository."""

    def __init__(self, git_dir: str):
        self.git_dir = git_dir
        self.env = dict(os.environ, GIT_DIR=git_dir)

    def run(self, *args: str) -> bytes:
        cmd = ["git", *args]
        try:
            result = subprocess.run(cmd, capture_output=True, env=self.env)
        except OSError as e:
            raise SpawnError(f"could not run {' '.join(cmd)}: {e}") from e
        if result.returncode != 0:
            raise MalformedOutputError(
                f"{' '.join(cmd)} exited with status {result.returncode}: "
                f"{_text(result.stderr).strip()}"
            )
        return result.stdout

    def start(self, *args: str) -> ImporterProcess:
        cmd = ["git", *args]
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, env=self.env)
        except OSError as e:
            raise SpawnError(f"could not spawn {' '.join(cmd)}: {e}") from e
        return ImporterProcess(proc)


def find_git_dir(gitroot: str) -> str:
    git_dir = gitroot
    if os.path.isdir(os.path.join(git_dir, ".git")):
        git_dir = os.path.join(git_dir, ".git")
    if not os.path.isfile(os.path.join(git_dir, "HEAD")):
        raise SetupError(f"dest dir `{git_dir}' is no git repo")
    return git_dir


# ---------- Destination session ----------


class FileChange:
    def __init__(self, path: str, mode: Optional[int] = None, mark: Optional[int] = None):
        self.path = path
        self.mode = mode  # None for a deletion
        self.mark = mark

    @property
    def deleted(self) -> bool:
        return self.mode is None

    def __repr__(self):
        if self.deleted:
            return f"<FileChange D {self.path}>"
        return f"<FileChange M {self.mode:o} :{self.mark} {self.path}>"


class GitDestination:
    """
    One fast-import session against an existing repository.

    Branch tips are None (no commits yet), a hex object id from before the
    session, or a ":N" mark for a commit written in this session.
    """

    def __init__(
        self,
        gitroot: str,
        *fast_import_args: str,
        status: Optional[Callable[[str], None]] = None,
        runner=None,
        default_branch: str = "master",
    ):
        self.gitroot = gitroot
        self.fast_import_args = list(fast_import_args)
        self.status = status or (lambda s: None)
        self.runner = runner
        self.default_branch = default_branch

        self._gfi: Optional[ImporterProcess] = None
        self._mark = 0
        self._branches: Dict[str, Optional[str]] = {}
        self._initial: Dict[str, str] = {}
        self._pickup: Dict[str, str] = {}
        self._files: Dict[str, Dict[str, bool]] = {}
        self._pending: Dict[int, tuple] = {}
        self._curbranch = default_branch

    # ----- lifecycle -----

    def open(self) -> "GitDestination":
        if self._gfi is not None:
            raise BridgeError("session already open")
        self.load_refs()
        self._gfi = self.runner.start("fast-import", *self.fast_import_args)
        self._pickup = dict(self._initial)
        self.status(f"fast-import started, {len(self._branches)} existing branches")
        return self

    def load_refs(self):
        """Read the commit tips of all branches that exist before the session."""
        out = self._git().run(
            "for-each-ref", "--format=%(objectname) %(objecttype) %(refname)", "refs/heads"
        )
        branches: Dict[str, Optional[str]] = {}
        for line in _text(out).splitlines():
            if not line.strip():
                continue
            try:
                sha, objtype, ref = line.split(" ", 2)
            except ValueError:
                raise MalformedOutputError(f"unexpected for-each-ref line: {line!r}")
            if objtype != "commit":
                continue
            branches[ref[len("refs/heads/"):]] = sha
        self._branches = branches
        self._initial = dict(branches)

    def finish(self):
        gfi = self._require_open()
        self._gfi = None
        try:
            gfi.close_write()
        finally:
            returncode = gfi.wait()
        if returncode != 0:
            raise ImporterFailed(returncode)
        self.status(f"fast-import finished, {self._mark} marks written")

    def abort(self):
        if self._gfi is not None:
            self._gfi.kill()
            self._gfi = None

    def flush(self):
        self._require_open().flush()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.finish()
        else:
            self.abort()
        return False

    # ----- queries -----

    def has_branch(self, branch: Optional[str]) -> bool:
        return (branch or self.default_branch) in self._branches

    def branch_id(self, branch: Optional[str]) -> Optional[str]:
        return self._branches.get(branch or self.default_branch)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def filelist(self, branch: Optional[str]) -> List[str]:
        if branch == COMPLETE:
            seen: Dict[str, bool] = {}
            for name in list(self._branches):
                for f in self.filelist(name):
                    seen[f] = True
            return list(seen)
        return list(self._branch_files(branch or self.default_branch))

    def last_date(self) -> datetime.datetime:
        latest = _text(
            self._git().run(
                "for-each-ref",
                "--count=1",
                "--sort=-committerdate",
                "--format=%(refname)",
                "refs/heads",
            )
        ).strip()
        if not latest:
            return EPOCH
        log = _text(self._git().run("cat-file", "-p", latest))
        for line in log.split("\n"):
            if not line:
                break
            fields = line.split()
            if fields and fields[0] == "committer":
                try:
                    return datetime.datetime.fromtimestamp(int(fields[-2]), tz=UTC)
                except (IndexError, ValueError):
                    break
        raise MalformedOutputError(f"no committer line in header of {latest}")

    # ----- branches -----

    def create_branch(
        self,
        branch: str,
        parent: Optional[str],
        vendor: bool,
        date=None,
    ):
        """
        Start `branch` at the current tip of `parent`, or with empty history
        for vendor branches and parents that have no commits yet.

        No commits may go to the parent until the new branch received its
        first commit.
        """
        parent = parent or self.default_branch
        if branch in self._branches:
            raise DuplicateBranchError(f"creating existing branch {branch}")

        gfi = self._require_open()
        tip = None if vendor else self._branches.get(parent)
        cmd = f"reset refs/heads/{branch}\n"
        if tip is not None:
            cmd += f"from {tip}\n"
        gfi.write(_as_bytes(cmd + "\n"))

        self._branches[branch] = tip
        if tip is None:
            self._files[branch] = {}
        else:
            self._files[branch] = dict(self._branch_files(parent))
        self.status(f"created branch {branch}" + (f" from {parent}" if tip else ""))

    def select_branch(self, branch: Optional[str]):
        self._curbranch = branch or self.default_branch

    # ----- staging -----

    def remove(self, path: str, rev):
        self._stage(rev, FileChange(path))

    def update(self, path: str, data: Union[str, bytes], mode: int, uid, gid, rev) -> int:
        gfi = self._require_open()
        data = _as_bytes(data)
        self._mark += 1
        gfi.write(_as_bytes(f"blob\nmark :{self._mark}\ndata {len(data)}\n"))
        gfi.write(data)
        gfi.write(b"\n")
        self._stage(rev, FileChange(path, normalize_mode(mode), self._mark))
        return self._mark

    def _stage(self, rev, change: FileChange):
        self._pending[id(rev)] = (rev, change)

    def _consume(self, revs: List) -> List[FileChange]:
        # all or nothing: a bad revision leaves the staged changes intact
        keys = [id(rev) for rev in revs]
        if len(set(keys)) != len(keys):
            raise KeyError("revision listed twice in one changeset")
        for rev, key in zip(revs, keys):
            if key not in self._pending:
                raise KeyError(rev)
        return [self._pending.pop(key)[1] for key in keys]

    # ----- commits -----

    def commit(self, author: str, date, msg: Union[str, bytes], revs: Iterable) -> int:
        return self._commit(author, date, msg, revs)

    def merge(self, other: Union[int, str], author: str, date, msg: Union[str, bytes], revs: Iterable) -> int:
        if other is None:
            raise BridgeError("merge parent has no commits")
        if isinstance(other, int):
            other = f":{other}"
        return self._commit(author, date, msg, revs, other)

    def _commit(self, author, date, msg, revs, merge_from: Optional[str] = None) -> int:
        gfi = self._require_open()
        branch = self._curbranch
        changes = self._consume(list(revs))
        files = self._branch_files(branch)

        self._mark += 1
        msg = _as_bytes(msg)
        lines = [
            f"commit refs/heads/{branch}",
            f"mark :{self._mark}",
            f"committer {fix_author(author)} {to_timestamp(date)} +0000",
            f"data {len(msg)}",
        ]
        gfi.write(_as_bytes("\n".join(lines) + "\n"))
        gfi.write(msg)
        gfi.write(b"\n")

        lines = []
        if branch in self._pickup:
            # first commit onto a pre-existing branch: force fast-import to
            # continue its history instead of starting a new root
            sha = self._pickup.pop(branch)
            lines.append(f"from refs/heads/{branch}^0")
            self.status(f"picking up branch {branch} at {sha}")
        if merge_from is not None:
            lines.append(f"merge {merge_from}")
        for change in changes:
            qpath = quote_path(change.path)
            if change.deleted:
                lines.append(f"D {qpath}")
                files.pop(change.path, None)
            else:
                lines.append(f"M {change.mode:o} :{change.mark} {qpath}")
                files[change.path] = True
        gfi.write(_as_bytes("".join(line + "\n" for line in lines) + "\n"))

        self._branches[branch] = f":{self._mark}"
        return self._mark

    # ----- internals -----

    def _require_open(self) -> ImporterProcess:
        if self._gfi is None:
            raise BridgeError("session is not open")
        return self._gfi

    def _git(self):
        if self.runner is None:
            self.runner = GitRunner(find_git_dir(self.gitroot))
        return self.runner

    def _branch_files(self, branch: str) -> Dict[str, bool]:
        files = self._files.get(branch)
        if files is None:
            files = {}
            if branch in self._initial:
                out = self._git().run(
                    "ls-tree", "--name-only", "--full-name", "-r", "-z", f"refs/heads/{branch}"
                )
                for f in _text(out).split("\0"):
                    # -z output is never quoted, so a file really named
                    # `"x"` comes back as `x`
                    if f:
                        files[unquote_path(f)] = True
            self._files[branch] = files
        return files


# ---------- Changeset feed ----------


def _entry_content(entry: Dict) -> bytes:
    if "content_base64" in entry:
        return base64.b64decode(entry["content_base64"])
    return _as_bytes(entry.get("content", ""))


def replay_feed(dest: GitDestination, records: Iterable[Dict]) -> int:
    """
    Replay decoded changeset records into an open destination.
    Each file entry dict doubles as the revision token for its change.
    Returns the number of commits written.
    """
    ncommits = 0
    for lineno, rec in enumerate(records, 1):
        op = rec.get("op")
        if op == "branch":
            dest.create_branch(
                rec["name"], rec.get("parent"), bool(rec.get("vendor")), rec.get("date")
            )
        elif op == "commit":
            dest.select_branch(rec.get("branch"))
            revs = rec.get("files", [])
            for entry in revs:
                if entry.get("delete"):
                    dest.remove(entry["path"], entry)
                    continue
                mode = entry.get("mode", 0o644)
                if isinstance(mode, str):
                    mode = int(mode, 8)
                dest.update(entry["path"], _entry_content(entry), mode, None, None, entry)
            args = (rec.get("author", "unknown"), rec.get("date", 0), rec.get("message", ""), revs)
            if rec.get("merge"):
                other = dest.branch_id(rec["merge"])
                if other is None:
                    raise BridgeError(f"record {lineno}: merge from unknown branch {rec['merge']}")
                dest.merge(other, *args)
            else:
                dest.commit(*args)
            ncommits += 1
        else:
            raise BridgeError(f"record {lineno}: unknown op {op!r}")
    return ncommits


def read_feed(lines: Iterable[str]) -> Iterable[Dict]:
    for line in lines:
        line = line.strip()
        if line:
            yield json.loads(line)


# ---------- CLI ----------


def _stderr_status(s: str):
    sys.stderr.write(s + "\n")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Feed changesets into git fast-import and query the target repository."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("last-date", help="print the date of the newest commit")
    p.add_argument("gitdir", help="target git repository")

    p = sub.add_parser("ls-files", help="print the files of a branch")
    p.add_argument("gitdir", help="target git repository")
    p.add_argument("branch", nargs="?", help="branch name (default: master)")
    p.add_argument("--all", action="store_true", help="list files of every branch")

    p = sub.add_parser("import", help="replay a JSON-lines changeset feed")
    p.add_argument("--quiet", "-q", action="store_true", help="no progress output")
    p.add_argument("gitdir", help="target git repository")
    p.add_argument("feed", help="feed file, or - for stdin")
    p.add_argument(
        "fast_import_args",
        nargs=argparse.REMAINDER,
        help="extra arguments for git fast-import (after --)",
    )

    args = parser.parse_args(argv)

    try:
        if args.command == "last-date":
            dest = GitDestination(args.gitdir, runner=GitRunner(find_git_dir(args.gitdir)))
            print(dest.last_date().isoformat())
        elif args.command == "ls-files":
            # ref discovery only, no importer
            dest = GitDestination(args.gitdir)
            dest.load_refs()
            for f in dest.filelist(COMPLETE if args.all else args.branch):
                print(f)
        else:
            gfi_args = [a for a in args.fast_import_args if a != "--"]
            status = None if args.quiet else _stderr_status
            with GitDestination(args.gitdir, *gfi_args, status=status) as dest:
                if args.feed == "-":
                    n = replay_feed(dest, read_feed(sys.stdin))
                else:
                    with open(args.feed, "r", encoding="utf-8") as f:
                        n = replay_feed(dest, read_feed(f))
            print(f"{n} commits written")
    except BridgeError as e:
        sys.stderr.write(f"cset2git: {e}\n")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
