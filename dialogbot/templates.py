"""
Response template rendering.

Rendering happens in two phases:
1. Variant resolution: every [[a||b||c]] marker is replaced by one of its
   alternatives, chosen at random.
2. Field substitution: the result is rendered with Jinja2, exposing only
   {{ Username }} and {{ UserID }}.
"""

import re
import random
import logging
from typing import Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from .errors import TemplateRenderError

logger = logging.getLogger(__name__)

VARIANT_PATTERN = re.compile(r"\[\[([^\[\]]+)\]\]")
VARIANT_SEPARATOR = "||"

_env = Environment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
# Only Username and UserID may be referenced
_env.globals.clear()


def resolve_variants(text: str, rng: Optional[random.Random] = None) -> str:
    """
    Replace each [[a||b]] marker with one randomly chosen alternative.

    Markers are processed right to left so earlier match offsets stay valid.
    A marker with a single alternative is left untouched.
    """
    chooser = rng or random
    result = text
    for match in reversed(list(VARIANT_PATTERN.finditer(text))):
        alternatives = match.group(1).split(VARIANT_SEPARATOR)
        if len(alternatives) < 2:
            continue
        choice = chooser.choice(alternatives)
        result = result[:match.start()] + choice + result[match.end():]
    return result


def render_template(text: str, username: str, userid: str) -> str:
    """
    Substitute the user fields into text.

    Raises:
        TemplateRenderError: On a syntax error or a reference to any field
            other than Username and UserID
    """
    try:
        template = _env.from_string(text)
        return template.render(Username=username, UserID=userid)
    except TemplateError as e:
        raise TemplateRenderError(f"Error parsing template: {e}") from e


def render(
    text: str,
    username: str,
    userid: str,
    rng: Optional[random.Random] = None
) -> str:
    """
    Run both rendering phases.

    A field substitution failure is logged and the variant-resolved text
    is returned instead.
    """
    resolved = resolve_variants(text, rng)
    try:
        return render_template(resolved, username, userid)
    except TemplateRenderError as e:
        logger.warning(str(e))
        return resolved
