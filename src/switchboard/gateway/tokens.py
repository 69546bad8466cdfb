"""Character-based input token estimate for /v1/messages/count_tokens."""

import math
from typing import Any

from .transforms.openai import dumps

CHARS_PER_TOKEN = 4


def estimate_input_tokens(messages: Any, system: Any = None) -> int:
    """Estimate input tokens as ``ceil(serialized_chars / 4)``.

    ``messages`` and ``system`` are serialized as compact JSON. A missing
    system or an empty system string contributes nothing; an empty list or
    object still counts its brackets.
    """
    total_chars = len(dumps(messages))
    if system is not None and system != "":
        total_chars += len(dumps(system))
    return math.ceil(total_chars / CHARS_PER_TOKEN)
