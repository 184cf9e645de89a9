"""Outbound text templating: spintax variants and send delays.

Tags understood in CRM-authored text:

    !/DELAY/800/2500/!                       wait a random 800–2500 ms before sending
    !/SPINTAX_GREET/Hi/Hello/Hey/SPINTAX_GREET/!   define variants (removed from output)
    ${SPINTAX_GREET}                          replaced by one random variant
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass

DELAY_RE = re.compile(r"!/DELAY/(\d+)/(\d+)/!")
DEFINITION_RE = re.compile(r"!/SPINTAX_([a-zA-Z0-9_]+)/(.*?)/SPINTAX_\1/!", re.DOTALL)
PLACEHOLDER_RE = re.compile(r"\$\{SPINTAX_([a-zA-Z0-9_]+)\}")
EXTRA_NEWLINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class RenderedText:
    text: str
    delay_ms: int = 0


def render(raw: str | None, rng: random.Random | None = None) -> RenderedText:
    if not raw:
        return RenderedText(text="")
    rng = rng or random.Random()
    text = raw
    delay_ms = 0

    match = DELAY_RE.search(text)
    if match:
        low, high = sorted((int(match.group(1)), int(match.group(2))))
        delay_ms = rng.randint(low, high)
        text = text.replace(match.group(0), "", 1)

    definitions: dict[str, list[str]] = {}

    def _define(m: re.Match[str]) -> str:
        options = [opt.strip() for opt in m.group(2).split("/")]
        definitions[m.group(1)] = [opt for opt in options if opt]
        return ""

    text = DEFINITION_RE.sub(_define, text)

    def _pick(m: re.Match[str]) -> str:
        options = definitions.get(m.group(1))
        return rng.choice(options) if options else m.group(0)

    text = PLACEHOLDER_RE.sub(_pick, text)
    return RenderedText(text=EXTRA_NEWLINES_RE.sub("\n\n", text.strip()), delay_ms=delay_ms)
