"""Handlebars prompt rendering for pipeline stages."""

from collections.abc import Callable
from typing import Any

import pybars

from scenecast.models import Stage

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

SUMMARY_MARKER = "ACTION_SUMMARY: "


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


# ── Default templates ────────────────────────────────────

_SCENE_LAYOUT = (
    "1.  A title (e.g., `<h1>Your Title</h1>`).\n"
    "2.  An `<img>` tag whose `src` attribute MUST be in the format "
    "`{{{image_endpoint}}}YOUR_URL_ENCODED_PROMPT?width={{{image_width}}}&height={{{image_height}}}`. "
    "URL-encode the image prompt and include the width and height parameters exactly as shown.\n"
    "3.  A description of the scene (e.g., `<p>Scene details...</p>`).\n"
    "4.  A `div` with class `further-thoughts` holding 1-2 optional form elements "
    "(slider, radio group, checkbox or text input) for player reflection.\n"
    "5.  3-4 distinct player choices. Each choice MUST be a `<button>` or `<a>` with an "
    "`onclick` attribute calling `performAction('ACTION_DESCRIPTION'); return false;`.\n\n"
    "Ensure the HTML is responsive, uses legible font sizes, is well-formed, self-contained "
    "and includes basic CSS."
)

DEFAULT_TEMPLATES: dict[str, str] = {
    "initial_scene": (
        "You are the game master of an interactive story. This is the VERY FIRST turn of a new game.\n"
        "**TASK 1: SUMMARIZE THE INITIAL STATE**\n"
        "Provide a concise summary of the scene you are about to create. Prefix this summary with "
        "`" + SUMMARY_MARKER + "` and end it with a newline.\n\n"
        "**TASK 2: GENERATE THE STARTING SCENE HTML**\n"
        "Then generate **only the HTML code** for the starting scene, structured in this order:\n"
        + _SCENE_LAYOUT + "\n"
        "Do not include any text outside the HTML tags, except for the initial "
        + SUMMARY_MARKER.strip() + " line."
    ),
    "summarize_turn": (
        "You are the game master of an interactive story.\n"
        "The player was in a scene described by the following HTML:\n"
        "```html\n{{{previous_html}}}\n```\n"
        "And the player chose the action: '{{{action}}}'.\n\n"
        "**TASK: SUMMARIZE THE PREVIOUS TURN**\n"
        "Provide a concise summary of the situation described in the HTML above AND the player's "
        "chosen action. Prefix this summary with `" + SUMMARY_MARKER + "` and end it with a newline.\n"
        "Example: `" + SUMMARY_MARKER + "Player was in a dark cave with a lever and chose to pull it.`"
    ),
    "generate_scene": (
        "You are the game master of an interactive story. Stay in character.\n"
        "{{#if summaries}}Story so far:\n{{#last summaries 5}}- {{{this}}}\n{{/last}}\n{{/if}}"
        "The previous turn was summarized as: '{{{summary}}}'.\n"
        "The player was in a scene described by the following HTML:\n"
        "```html\n{{{previous_html}}}\n```\n"
        "And the player chose the action: '{{{action}}}'.\n\n"
        "**TASK: GENERATE THE NEXT GAME SCENE HTML**\n"
        "Generate **only the HTML code** for the next scene, structured in this order:\n"
        + _SCENE_LAYOUT + "\n"
        "Do not include any explanations or text outside the HTML tags."
    ),
    "diagnosis": (
        "Based on the following summaries of player actions and game states:\n\n"
        "Player Action Summaries:\n{{#each summaries}}{{{this}}}\n\n{{/each}}"
        "Provide a detailed analysis of the player's choices: recurring patterns, "
        "preferences and likely motivations. Present it as well-formed HTML suitable for display "
        "in a browser. You MAY use simple form elements to pose reflective questions. "
        "Focus on patterns and interpretations, not definitive judgements. Use legible font sizes."
    ),
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def template_for(stage: Stage, overrides: dict[str, str] | None = None) -> str:
    """Return the configured template for a stage, falling back to the default."""
    if overrides and overrides.get(stage):
        return overrides[stage]
    return DEFAULT_TEMPLATES[stage]


def build_context(
    *,
    image_endpoint: str,
    image_width: int,
    image_height: int,
    action: str | None = None,
    previous_html: str | None = None,
    summary: str | None = None,
    summaries: list[str] | None = None,
) -> dict[str, Any]:
    """Assemble template variables for one stage.

    Keys for values that were not given are left out, so `{{#if x}}` works.
    """
    ctx: dict[str, Any] = {
        "image_endpoint": image_endpoint,
        "image_width": image_width,
        "image_height": image_height,
    }
    if action is not None:
        ctx["action"] = action
    if previous_html is not None:
        ctx["previous_html"] = previous_html
    if summary is not None:
        ctx["summary"] = summary
    if summaries is not None:
        ctx["summaries"] = list(summaries)
    return ctx
