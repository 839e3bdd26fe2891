"""Rule evaluator — decide whether a job is eligible for a run.

Pattern forms accepted in ``only``/``except`` lists:
    - ``tags``          — matches when the run targets a tag
    - ``branches``      — matches when the run targets a branch
    - ``/regex/flags``  — ``re.search`` against the ref name (flag ``i`` only)
    - ``glob:pattern``  — ``fnmatch`` against the ref name
    - anything else     — exact, case-sensitive ref name

Evaluation is pure: the same (rule, context) pair always yields the same
decision.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass

from conveyor.pipeline.errors import RuleEvaluationError
from conveyor.pipeline.models import ActivationRule, RuleDecision, RunContext

logger = logging.getLogger("conveyor.pipeline.rules")

TAGS_KEYWORD = "tags"
BRANCHES_KEYWORD = "branches"
GLOB_PREFIX = "glob:"

_REGEX_FORM = re.compile(r"^/(.*)/([a-z]*)$")


@dataclass(frozen=True)
class RuleVerdict:
    """A decision plus the human-readable reason behind a skip."""

    decision: RuleDecision
    reason: str = ""


def match_pattern(pattern: str, ctx: RunContext) -> bool:
    """Check a single only/except pattern against the run context.

    Raises RuleEvaluationError for malformed regex or glob forms.
    """
    if pattern == TAGS_KEYWORD:
        return ctx.is_tag
    if pattern == BRANCHES_KEYWORD:
        return not ctx.is_tag

    regex = _REGEX_FORM.match(pattern)
    if regex:
        return _compile_regex(pattern, regex.group(1), regex.group(2)).search(ctx.ref) is not None

    if pattern.startswith(GLOB_PREFIX):
        glob = pattern[len(GLOB_PREFIX) :]
        if not glob:
            raise RuleEvaluationError(pattern, "empty glob")
        return fnmatch.fnmatchcase(ctx.ref, glob)

    return pattern == ctx.ref


def _compile_regex(pattern: str, body: str, flags: str) -> re.Pattern[str]:
    if not body:
        raise RuleEvaluationError(pattern, "empty regular expression")
    re_flags = 0
    for flag in flags:
        if flag != "i":
            raise RuleEvaluationError(pattern, f"unsupported flag '{flag}'")
        re_flags |= re.IGNORECASE
    try:
        return re.compile(body, re_flags)
    except re.error as exc:
        raise RuleEvaluationError(pattern, str(exc)) from exc


def explain(rule: ActivationRule, ctx: RunContext) -> RuleVerdict:
    """Evaluate a rule and keep the reason for a skip."""
    try:
        if rule.only and not any(match_pattern(p, ctx) for p in rule.only):
            return RuleVerdict(
                RuleDecision.SKIP,
                f"ref '{ctx.ref}' does not match only: {rule.only}",
            )
        for pattern in rule.except_:
            if match_pattern(pattern, ctx):
                return RuleVerdict(
                    RuleDecision.SKIP,
                    f"ref '{ctx.ref}' excluded by except pattern '{pattern}'",
                )
    except RuleEvaluationError as exc:
        logger.warning("Skipping job with unevaluable rule: %s", exc)
        return RuleVerdict(RuleDecision.SKIP, str(exc))
    return RuleVerdict(RuleDecision.RUN)


def evaluate(rule: ActivationRule, ctx: RunContext) -> RuleDecision:
    """Return RUN or SKIP for a job's activation rule."""
    return explain(rule, ctx).decision
