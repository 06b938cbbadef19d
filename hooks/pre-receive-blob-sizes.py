#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.10"
# dependencies = ["pygit2>=1.18"]
# ///
"""pre-receive hook that rejects pushes introducing oversized blobs.

Reads `<old> <new> <ref>` lines from stdin and checks all of them before
deciding, so one push reports every offending blob across all its refs.
Pass --fail-fast to stop at the first one instead.
"""

import sys

from size_policy import main

if __name__ == "__main__":
    sys.exit(
        main(
            prog="pre-receive-blob-sizes",
            description="pre-receive hook: reject pushes whose new commits contain oversized blobs.",
            read_stdin=True,
        )
    )
