#!/usr/bin/env python3
"""
Merge Diff

Three-way classification diff of two key-sorted, newline-delimited record
files.  A single forward merge-join over both inputs routes every record to
one of three outputs:

  creates  records of NEW whose key does not occur in OLD
  updates  records of NEW whose key occurs in OLD with different content
  deletes  records of OLD whose key does not occur in NEW

Records that are byte-for-byte identical on both sides produce no output.
The key of a record is the bytes before the first delimiter (a comma), or
the whole record when it has no delimiter.  Keys compare as raw bytes.

Both inputs MUST already be sorted ascending by key.  Unsorted input is not
detected; it produces a wrong diff, not an error.

Two input strategies produce byte-identical output:
  - buffered  sequential readline() over the file, O(line) memory
  - mmap      zero-copy scan over a read-only memory mapping of the file.
              The mapping is only safe while nobody modifies the file; the
              caller asserts this and no locking or checksumming is done.

Output files are opened for append, so repeated runs against the same
directory accumulate.

Usage:
  python mergediff.py <new> <old> <outdir> [--strategy buffered|mmap] [--verbose]
"""

import argparse
import mmap
import os
import re
import sys
import time
from contextlib import ExitStack, contextmanager, suppress
from dataclasses import dataclass
from typing import NamedTuple, Optional, Union


DELIMITER = b','
TERMINATOR = b'\n'
OUTPUT_NAMES = ('creates.csv', 'updates.csv', 'deletes.csv')
SINK_BUFFER_SIZE = 1 << 16      # 64 KB of write buffering per output
STRATEGIES = ('buffered', 'mmap')

# A record is one line including its terminator (when the input has one).
# Buffered sources hand out bytes; mapped sources hand out memoryview slices
# of the mapping.  Both compare with ==, have len(), and write unchanged.
Record = Union[bytes, memoryview]


# ============================================================================
# Errors
#
# Every I/O failure is fatal to the run.  Nothing is retried and bytes
# already written to an output are left in place.
# ============================================================================

class MergeDiffError(OSError):
    """Base class for fatal merge diff failures.

    An OSError, so callers guarding file work with `except OSError` see it.
    """

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


class OpenFailure(MergeDiffError):
    """An input or output file could not be opened."""


class ReadFailure(MergeDiffError):
    """Reading an input failed part way through the scan."""


class WriteFailure(MergeDiffError):
    """Writing or flushing an output failed."""


def _describe(exc: OSError) -> str:
    return exc.strerror or str(exc)


# ============================================================================
# Keys
# ============================================================================

# Compiled delimiter patterns.  re searches any buffer without copying it,
# so the same lookup serves bytes records and mapped memoryview records.
_delim_cache: dict = {}


def key_of(record: Record, delimiter: bytes = DELIMITER) -> Record:
    """Return the key of a record: the span before the first delimiter.

    Without a delimiter the key is the whole record, terminator included.
    The result is a slice of the same type as the record.
    """
    pattern = _delim_cache.get(delimiter)
    if pattern is None:
        pattern = _delim_cache[delimiter] = re.compile(re.escape(delimiter))
    m = pattern.search(record)
    if m is None:
        return record
    return record[:m.start()]


def _compare(a: Record, b: Record) -> int:
    """Three-way raw byte comparison of two keys."""
    # memoryview only supports equality; bytes() of a bytes key is a no-op.
    a = bytes(a)
    b = bytes(b)
    return (a > b) - (a < b)


# ============================================================================
# Record sources
#
# A source is anything with peek() and advance():
#   peek()     the head record, or None at end of stream.  Repeated calls
#              without advance() return the same object.
#   advance()  drop the head record.
# Sources only move forward.
# ============================================================================

class BufferedSource:
    """Records read one line at a time from a binary stream."""

    def __init__(self, stream, path=None):
        self._stream = stream
        self.path = path if path is not None else getattr(stream, 'name', None)
        self._head: Optional[bytes] = None
        self._loaded = False
        self._eof = False

    def peek(self) -> Optional[bytes]:
        if not self._loaded:
            self._load()
        return self._head

    def advance(self) -> None:
        if not self._loaded:
            self._load()
        self._head = None
        self._loaded = self._eof

    def _load(self):
        try:
            line = self._stream.readline()
        except OSError as exc:
            raise ReadFailure(f"error reading {self.path}: {_describe(exc)}",
                              self.path) from exc
        if line:
            self._head = line
        else:
            self._head = None
            self._eof = True
        self._loaded = True


class MappedSource:
    """Records sliced out of a read-only memory mapping, without copying.

    The whole file is mapped once at construction.  Each record is a
    memoryview into the mapping, valid while the source is open.

    UNSAFE BY CONTRACT: the mapping reflects the file as it changes.  If the
    file is truncated or rewritten while the scan runs, records change
    underneath the diff and reading a truncated page may kill the process.
    The caller must own the file exclusively for the whole run and says so
    by passing exclusive=True.  Nothing here detects concurrent modification.
    """

    def __init__(self, fileobj, *, exclusive: bool = False, path=None):
        if exclusive is not True:
            raise ValueError(
                "MappedSource requires exclusive=True: the caller must "
                "guarantee the file is not modified while it is mapped")
        self.path = path if path is not None else getattr(fileobj, 'name', None)
        size = os.fstat(fileobj.fileno()).st_size
        if size == 0:
            # mmap refuses zero-length mappings
            self._mm = None
            self._view = memoryview(b'')
        else:
            self._mm = mmap.mmap(fileobj.fileno(), 0, access=mmap.ACCESS_READ)
            self._view = memoryview(self._mm)
        self._end = size
        self._pos = 0
        self._head: Optional[memoryview] = None
        self._loaded = False
        self.closed = False

    def peek(self) -> Optional[memoryview]:
        if not self._loaded:
            self._scan()
        return self._head

    def advance(self) -> None:
        if not self._loaded:
            self._scan()
        self._head = None
        self._loaded = self._pos >= self._end

    def _scan(self):
        start = self._pos
        if start >= self._end:
            self._head = None
        else:
            nl = self._mm.find(TERMINATOR, start)
            stop = self._end if nl < 0 else nl + len(TERMINATOR)
            self._head = self._view[start:stop]
            self._pos = stop
        self._loaded = True

    def close(self) -> None:
        """Drop the mapping.

        Record views still referenced elsewhere keep the pages mapped until
        they are garbage collected; nothing is handed out after close().
        """
        if self.closed:
            return
        self.closed = True
        self._head = None
        self._loaded = True
        self._pos = self._end
        self._view.release()
        self._mm = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@contextmanager
def open_source(path, strategy: str = 'buffered'):
    """Open `path` as a record source using the named strategy.

    The mmap strategy asserts exclusive access on the caller's behalf: use
    it only when nothing else writes the input during the run.
    """
    if strategy not in STRATEGIES:
        raise ValueError(f"unknown strategy {strategy!r}; "
                         f"expected one of {', '.join(STRATEGIES)}")
    try:
        f = open(path, 'rb')
    except OSError as exc:
        raise OpenFailure(f"could not open {path}: {_describe(exc)}",
                          path) from exc
    with f:
        if strategy == 'buffered':
            yield BufferedSource(f, path)
            return
        try:
            src = MappedSource(f, exclusive=True, path=path)
        except OSError as exc:
            raise OpenFailure(f"could not map {path}: {_describe(exc)}",
                              path) from exc
        with src:
            yield src


# ============================================================================
# Output sinks
# ============================================================================

class OutputSink:
    """Append-only record writer over one buffered binary file.

    close() flushes explicitly so that a failed flush is raised as
    WriteFailure instead of being lost when the file object is collected.
    """

    def __init__(self, fileobj, path=None):
        self._f = fileobj
        self.path = path if path is not None else getattr(fileobj, 'name', None)
        self.records = 0
        self.bytes_written = 0
        self.closed = False

    def write(self, record: Record) -> None:
        if self.closed:
            raise ValueError(f"write to closed sink {self.path}")
        try:
            self._f.write(record)
        except OSError as exc:
            raise WriteFailure(f"error writing {self.path}: {_describe(exc)}",
                               self.path) from exc
        self.records += 1
        self.bytes_written += len(record)

    def flush(self) -> None:
        try:
            self._f.flush()
        except OSError as exc:
            raise WriteFailure(f"error flushing {self.path}: {_describe(exc)}",
                               self.path) from exc

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._f.flush()
        except OSError as exc:
            # The file's own close() retries the failed flush; report the first.
            with suppress(OSError):
                self._f.close()
            raise WriteFailure(f"error flushing {self.path}: {_describe(exc)}",
                               self.path) from exc
        try:
            self._f.close()
        except OSError as exc:
            raise WriteFailure(f"error closing {self.path}: {_describe(exc)}",
                               self.path) from exc


class Sinks(NamedTuple):
    creates: OutputSink
    updates: OutputSink
    deletes: OutputSink


@contextmanager
def open_sinks(directory, buffer_size: int = SINK_BUFFER_SIZE):
    """Open creates/updates/deletes in `directory` for append.

    Files are created when missing.  Every sink is closed on exit and any
    flush failure is raised, even when the other sinks closed cleanly.
    """
    with ExitStack() as stack:
        sinks = []
        for name in OUTPUT_NAMES:
            path = os.path.join(directory, name)
            try:
                f = open(path, 'ab', buffering=buffer_size)
            except OSError as exc:
                raise OpenFailure(
                    f"couldn't open {path} for writing: {_describe(exc)}",
                    path) from exc
            sink = OutputSink(f, path)
            stack.callback(sink.close)
            sinks.append(sink)
        yield Sinks(*sinks)


# ============================================================================
# Merge-join diff
#
# Both heads are compared on every step:
#   identical records          advance both, no output
#   key(new) == key(old)       update  (new content), advance both
#   key(new) <  key(old)       create, advance new
#   key(new) >  key(old)       delete, advance old
# Once either side runs out the rest of the other side is drained: new into
# creates, old into deletes.  Repeated keys are not deduplicated; each one
# meets whatever the other side's head is at that point.
# ============================================================================

@dataclass
class DiffStats:
    """Record counts of one diff run."""
    creates: int = 0
    updates: int = 0
    deletes: int = 0
    unchanged: int = 0


def _print_diff_stats(stats: DiffStats) -> None:
    """Print verbose classification counts."""
    changed = stats.creates + stats.updates + stats.deletes
    total = changed + stats.unchanged
    pct = changed / total * 100 if total else 0
    print(f"  result: {stats.creates} creates, {stats.updates} updates, "
          f"{stats.deletes} deletes, {stats.unchanged} unchanged\n"
          f"  result: {changed} records written, {pct:.1f}% of {total} classified",
          file=sys.stderr)


def merge_diff(new, old, sinks: Sinks, *, delimiter: bytes = DELIMITER,
               verbose: bool = False) -> DiffStats:
    """Classify every record of two sorted sources into three sinks.

    `new` and `old` are record sources; `sinks` holds the creates, updates
    and deletes outputs.  Sinks are written but not closed.
    """
    stats = DiffStats()

    while True:
        new_rec = new.peek()
        old_rec = old.peek()
        if new_rec is None or old_rec is None:
            break

        if new_rec == old_rec:
            stats.unchanged += 1
            new.advance()
            old.advance()
            continue

        order = _compare(key_of(new_rec, delimiter), key_of(old_rec, delimiter))
        if order == 0:
            sinks.updates.write(new_rec)
            stats.updates += 1
            new.advance()
            old.advance()
        elif order < 0:
            sinks.creates.write(new_rec)
            stats.creates += 1
            new.advance()
        else:
            sinks.deletes.write(old_rec)
            stats.deletes += 1
            old.advance()

    # At most one side still has records.
    rec = old.peek()
    while rec is not None:
        sinks.deletes.write(rec)
        stats.deletes += 1
        old.advance()
        rec = old.peek()

    rec = new.peek()
    while rec is not None:
        sinks.creates.write(rec)
        stats.creates += 1
        new.advance()
        rec = new.peek()

    if verbose:
        _print_diff_stats(stats)
    return stats


def diff_files(new_path, old_path, out_dir, *, strategy: str = 'buffered',
               delimiter: bytes = DELIMITER, verbose: bool = False) -> DiffStats:
    """Diff two sorted files into creates/updates/deletes under `out_dir`.

    The run only succeeds once all three outputs are flushed.  Choosing the
    mmap strategy asserts that neither input changes during the run.
    """
    if verbose:
        print(f"mergediff: strategy={strategy}, new={new_path}, "
              f"old={old_path}, outdir={out_dir}", file=sys.stderr)
    with ExitStack() as stack:
        new = stack.enter_context(open_source(new_path, strategy))
        old = stack.enter_context(open_source(old_path, strategy))
        # Entered last so the outputs are flushed before the inputs close.
        sinks = stack.enter_context(open_sinks(out_dir))
        stats = merge_diff(new, old, sinks, delimiter=delimiter, verbose=verbose)
    return stats


# ============================================================================
# CLI
# ============================================================================

def cmd_diff(args):
    t0 = time.time()
    try:
        stats = diff_files(args.new, args.old, args.outdir,
                           strategy=args.strategy, verbose=args.verbose)
    except MergeDiffError as exc:
        raise SystemExit(f"error: {exc}")
    elapsed = time.time() - t0

    print(f"New:          {args.new} ({os.path.getsize(args.new):,} bytes)")
    print(f"Old:          {args.old} ({os.path.getsize(args.old):,} bytes)")
    print(f"Output dir:   {args.outdir}")
    print(f"Strategy:     {args.strategy}")
    print(f"Creates:      {stats.creates}")
    print(f"Updates:      {stats.updates}")
    print(f"Deletes:      {stats.deletes}")
    print(f"Unchanged:    {stats.unchanged}")
    print(f"Time:         {elapsed:.3f}s")


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Three-way diff of two key-sorted CSV files into '
                    'creates, updates and deletes (appended to <outdir>)')
    ap.add_argument('new', help='New file, sorted by key')
    ap.add_argument('old', help='Old file, sorted by key')
    ap.add_argument('outdir', help='Existing directory for '
                    + ', '.join(OUTPUT_NAMES))
    ap.add_argument('--strategy', choices=STRATEGIES, default='buffered',
                    help='Input access: buffered reads, or mmap (inputs must '
                         'not be modified during the run) (default: buffered)')
    ap.add_argument('--verbose', action='store_true',
                    help='Print diagnostic messages to stderr')
    ap.set_defaults(func=cmd_diff)

    args = ap.parse_args(argv)
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
