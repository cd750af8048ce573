"""``{{variable}}`` interpolation for prompt templates."""

from __future__ import annotations

import re

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def interpolate_prompt_variables(template: str, variables: dict[str, object]) -> str:
    """Replace ``{{name}}`` placeholders in *template* with *variables*.

    Every supplied variable must have a placeholder, which catches typos
    between template and caller.  Placeholders without a value are left as-is.
    Substitution is single-pass: values containing ``{{...}}`` are not expanded.

    Raises:
        KeyError: a variable was supplied with no matching placeholder.
    """
    present = set(_PLACEHOLDER_RE.findall(template))
    for key in variables:
        if key not in present:
            raise KeyError(
                f'Variable "{key}" was provided but no "{{{{{key}}}}}" placeholder exists in template'
            )

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER_RE.sub(_sub, template)
