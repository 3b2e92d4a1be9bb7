#!/usr/bin/env python3
"""
Generate a key-sorted new/old CSV pair with controlled differences.

Arguments:
  num_keys     Number of distinct keys across both files
  change_pct   Percent of keys that differ, 0–100, split evenly between
               creates, updates and deletes
  [new_path]   New output file  (default: new.csv)
  [old_path]   Old output file  (default: old.csv)

Keys are zero-padded decimals so byte order equals numeric order.  The run
is deterministic (seed 42); the expected creates/updates/deletes counts are
printed so a mergediff run over the pair can be checked by eye.

Usage:
  python gen_sorted_pairs.py 1000 30
  python gen_sorted_pairs.py 5000000 5 big-new.csv big-old.csv
"""

import os
import random
import sys

# Lines are buffered and written in chunks of about this many bytes.
FLUSH_BYTES = 8 * 1024 * 1024


def _gen_row(rng, key_width, k):
    """Return one record for key number k, terminator included."""
    return b'%0*d,%d,%s\n' % (key_width, k, rng.randrange(1_000_000),
                              rng.choice((b'alpha', b'beta', b'gamma', b'delta')))


def _write_pair(rng, n, change_pct, new_path, old_path):
    """Write both files in one pass over the keys; return per-class counts."""
    width = len(str(n))
    counts = {'creates': 0, 'updates': 0, 'deletes': 0, 'unchanged': 0}
    third = change_pct / 3
    with open(new_path, 'wb') as new_f, open(old_path, 'wb') as old_f:
        new_buf, old_buf = [], []
        buf_sz = 0
        for k in range(n):
            row = _gen_row(rng, width, k)
            roll = rng.random() * 100
            if roll < third:
                new_buf.append(row)
                counts['creates'] += 1
            elif roll < 2 * third:
                old_buf.append(row)
                counts['deletes'] += 1
            elif roll < 3 * third:
                new_buf.append(row[:-1] + b',changed\n')
                old_buf.append(row)
                counts['updates'] += 1
            else:
                new_buf.append(row)
                old_buf.append(row)
                counts['unchanged'] += 1
            buf_sz += 2 * len(row)
            if buf_sz >= FLUSH_BYTES:
                new_f.write(b''.join(new_buf))
                old_f.write(b''.join(old_buf))
                new_buf, old_buf = [], []
                buf_sz = 0
        new_f.write(b''.join(new_buf))
        old_f.write(b''.join(old_buf))
    return counts


def main():
    if len(sys.argv) < 3:
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(1)

    n          = int(sys.argv[1])
    change_pct = float(sys.argv[2])
    new_path   = sys.argv[3] if len(sys.argv) > 3 else "new.csv"
    old_path   = sys.argv[4] if len(sys.argv) > 4 else "old.csv"

    if not (0.0 <= change_pct <= 100.0):
        sys.exit("change_pct must be between 0 and 100")

    for path in (new_path, old_path):
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    rng = random.Random(42)
    counts = _write_pair(rng, n, change_pct, new_path, old_path)

    print(f"keys:       {n}")
    print(f"changed:    {change_pct:.0f}%")
    print(f"new:        {new_path}  ({os.path.getsize(new_path):,} bytes)")
    print(f"old:        {old_path}  ({os.path.getsize(old_path):,} bytes)")
    print(f"expect:     {counts['creates']} creates, {counts['updates']} updates, "
          f"{counts['deletes']} deletes, {counts['unchanged']} unchanged")


if __name__ == "__main__":
    main()
