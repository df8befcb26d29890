"""Synthesis prompt derivation.

The synthesis prompt is built from the analysis output and a fixed render
style.  The function is pure: identical analyses always produce identical
prompts, so a retried synthesis call sends exactly the same request.

Prompt Structure::

    Hyper-realistic 3D character render of [name], a futuristic monster
    evolved from a [source label].

    Elemental types: [tag 1] and [tag 2].

    [Fixed: render style boilerplate]

Only the first two tags are used.  Tags equal to the ``"Unknown"`` padding
placeholder are left out, and the types line disappears when none remain.
"""

from __future__ import annotations

from lexicon.core.models import Analysis

# ---------------------------------------------------------------------------
# Fixed render style.  Defines the look of every generated asset, so it is a
# constant rather than configuration.
# ---------------------------------------------------------------------------

_STYLE_BOILERPLATE = (
    "Style: Unreal Engine 5, cinematic lighting, neon cyan and magenta details, "
    "dark background, 4k quality."
)

_PLACEHOLDER_TAG = "Unknown"


def _clean(value: str) -> str:
    return " ".join(value.split())


def build_synthesis_prompt(analysis: Analysis) -> str:
    """Compile the image-synthesis prompt for *analysis*.

    Args:
        analysis: Output of the image-understanding stage.

    Returns:
        The prompt text, sections separated by blank lines.
    """
    sections = [
        f"Hyper-realistic 3D character render of {_clean(analysis.name)}, "
        f"a futuristic monster evolved from a {_clean(analysis.source_label)}."
    ]

    tags = [_clean(t) for t in analysis.tags[:2] if _clean(t) and t != _PLACEHOLDER_TAG]
    if tags:
        sections.append(f"Elemental types: {' and '.join(tags)}.")

    sections.append(_STYLE_BOILERPLATE)
    return "\n\n".join(sections)
