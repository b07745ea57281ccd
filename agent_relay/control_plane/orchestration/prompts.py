"""Built-in prompts for the author and reviewer steps of phase runs and plan reviews."""

from __future__ import annotations

from string import Template

STATUS_INSTRUCTIONS = """\
When you are done, end your reply with a status block:

<!-- relay:status
result: complete | needs_human | failed
commit: <hash of the commit you made, when complete>
reason: <required unless complete>
-->"""

VERDICT_INSTRUCTIONS = """\
End your reply with a verdict block:

<!-- relay:verdict
readiness: ready | ready_with_corrections | not_ready
items:
  - id: <short id>
    title: <one line>
    action: auto_fix | human_required
    reason: <why>
-->"""

TEMPLATES: dict[str, str] = {
    "author-next-phase": (
        "Implement phase $phase of the plan at $plan_path.\n"
        "Commit your work when the phase is complete.\n\n"
        "Notes from the operator: $user_notes\n\n" + STATUS_INSTRUCTIONS
    ),
    "author-quality-fix": (
        "Quality gates failed for phase $phase of the plan at $plan_path.\n"
        "Fix the following failures and commit the result:\n\n$failures\n\n" + STATUS_INSTRUCTIONS
    ),
    "author-process-review": (
        "Address the review items for phase $phase of the plan at $plan_path.\n"
        "The review is at $review_path.\n\n$items\n\n" + STATUS_INSTRUCTIONS
    ),
    "reviewer-commit": (
        "Review commit $commit implementing phase $phase of the plan at $plan_path.\n"
        "Write your review to $review_path.\n\n" + VERDICT_INSTRUCTIONS
    ),
    "reviewer-plan": (
        "Review the implementation plan at $plan_path for completeness, ordering and risk.\n"
        "Append your review to $review_path.\n\n"
        "Notes from the operator: $user_notes\n\n" + VERDICT_INSTRUCTIONS
    ),
    "author-process-plan-review": (
        "Revise the implementation plan at $plan_path to address the review at $review_path.\n\n"
        "$items\n\n" + STATUS_INSTRUCTIONS
    ),
}


def render_prompt(name: str, **values: object) -> str:
    try:
        template = TEMPLATES[name]
    except KeyError as exc:
        raise ValueError("unknown_prompt_template") from exc
    return Template(template).safe_substitute({key: str(value) for key, value in values.items()})
