#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.10"
# dependencies = ["pygit2>=1.18"]
# ///
"""Server-side hook that rejects ref updates introducing oversized blobs.

Usage: check-blob-sizes.py [--git-dir DIR] [--fail-fast | --log-only] OLDREV NEWREV REFNAME

Every blob in every commit the update introduces is compared against
MAX_OBJECT_SIZE (bytes, default 25 MiB).  Exits 1 when any blob is larger.
"""

import sys

from size_policy import main

if __name__ == "__main__":
    sys.exit(main(prog="check-blob-sizes"))
