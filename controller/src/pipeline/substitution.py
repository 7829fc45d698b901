"""
Pipeline variables and ``$VAR`` / ``${VAR}`` substitution.
"""

import logging
import re
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from controller.src.models.step import BuildInfo
from controller.src.pipeline.descriptors import validate_substitutions
from controller.src.pipeline.errors import ValidationError, ValidationErrorKind

logger = logging.getLogger(__name__)

_TOKEN = re.compile(
    r"\$(?:(?P<escaped>\$)|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
)

BUILTIN_VARIABLES = (
    "BUILD_ID",
    "PROJECT_ID",
    "BRANCH_NAME",
    "TAG_NAME",
    "COMMIT_SHA",
    "SHORT_SHA",
    "REPO_NAME",
)


def builtin_variables(build: BuildInfo) -> Dict[str, str]:
    return {
        "BUILD_ID": build.build_id,
        "PROJECT_ID": build.project_id,
        "BRANCH_NAME": build.branch_name,
        "TAG_NAME": build.tag_name,
        "COMMIT_SHA": build.commit_sha,
        "SHORT_SHA": build.commit_sha[:7],
        "REPO_NAME": build.repo_name,
    }


def resolve_variables(
    build: BuildInfo,
    defaults: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> Mapping[str, str]:
    """Build the read-only variable set for one run.

    ``overrides`` (supplied with the build request) win over ``defaults``
    (the build file's ``substitutions`` block). Built-ins cannot be
    overridden.
    """
    user = dict(validate_substitutions(dict(defaults or {})))
    user.update(validate_substitutions(dict(overrides or {})))
    variables = builtin_variables(build)
    for key in user:
        if key in variables:
            raise ValidationError(
                ValidationErrorKind.MALFORMED_SUBSTITUTION,
                f"Substitution '{key}' shadows a built-in variable",
            )
    variables.update(user)
    return MappingProxyType(variables)


def substitute(text: str, variables: Mapping[str, str]) -> str:
    """Replace ``$VAR`` and ``${VAR}`` tokens; ``$$`` yields a literal ``$``.

    Names that are not variables are left as written, so shell variables in
    inline scripts reach the shell untouched.
    """
    def replace(match: "re.Match[str]") -> str:
        if match.group("escaped"):
            return "$"
        name = match.group("braced") or match.group("bare")
        if name in variables:
            return variables[name]
        logger.debug(f"Leaving unknown variable ${name} unresolved")
        return match.group(0)

    return _TOKEN.sub(replace, text)
