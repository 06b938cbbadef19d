#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.10"
# dependencies = ["pygit2>=1.18"]
# ///
"""post-receive hook that logs oversized blobs in an accepted push.

The push has already landed by the time post-receive runs, so this only
reports and exits 0 unless --report or --fail-fast is passed.
"""

import sys

from size_policy import PolicyMode, main

if __name__ == "__main__":
    sys.exit(
        main(
            prog="post-receive-blob-sizes",
            description="post-receive hook: log oversized blobs in commits that were just pushed.",
            read_stdin=True,
            default_mode=PolicyMode.LOG_ONLY,
        )
    )
