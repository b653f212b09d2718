"""Classify raw agent output: completion sentinel and failure heuristics.

Both checks are substring heuristics over free text. The failure check looks
for the shapes tools print when they fail (``error:``, ``FAILED``), not for
the words themselves, so a summary like "added error handling" passes.
"""

import re

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"

# Any case: "error:", "Error:", "ERROR:" and so on
FAILURE_MARKERS = ("error:", "fatal:", "panic:", "failed to")

# Upper case only, as printed by test runners ("3 tests FAILED")
FAILURE_SHOUTS = ("FAILED",)

_FAILURE_PATTERN = re.compile(
    "|".join(
        [r"(?i:%s)" % re.escape(marker) for marker in FAILURE_MARKERS]
        + [r"\b%s\b" % re.escape(shout) for shout in FAILURE_SHOUTS]
    )
)


def contains_completion_signal(output: str) -> bool:
    """True if the agent declared all work done."""
    return COMPLETION_SENTINEL in (output or "")


def is_failure_output(output: str) -> bool:
    """
    Heuristically detect a failed agent run from its text.

    Matches ``error:``, ``fatal:``, ``panic:`` and ``failed to`` in any case,
    and a standalone upper-case ``FAILED``. Bare words in prose ("error
    handling", "the test failed before the fix") do not match.
    """
    if not output:
        return False
    return _FAILURE_PATTERN.search(output) is not None
