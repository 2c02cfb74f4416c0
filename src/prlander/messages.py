from __future__ import annotations

from collections.abc import Sequence

from prlander.models import KanbanTask, PullRequestReview, PullRequestReviewComment


_DIFF_HUNK_TAIL_CHARS = 200


def format_bot_comment(title: str, body: str | None = None) -> str:
    if body:
        return f"### {title}\n\n{body}"
    return f"### {title}"


def rebase_conflict_comment(*, branch: str, base_branch: str) -> str:
    return format_bot_comment(
        "Merge Queue: Rebase Conflict",
        f"Could not automatically rebase `{branch}` onto `{base_branch}`. "
        "Please resolve the conflicts manually and re-approve for merge.",
    )


def merge_commit_title(*, task_title: str | None, pr_number: int) -> str:
    if task_title:
        return f"{task_title} (#{pr_number})"
    return f"PR #{pr_number}"


def merged_via_queue_report(pr_number: int) -> str:
    return f"PR #{pr_number} merged via merge queue."


def merged_externally_report(pr_number: int) -> str:
    return f"PR #{pr_number} merged (detected by merge queue)."


def merged_report(pr_number: int) -> str:
    return f"PR #{pr_number} merged successfully."


def review_budget_exceeded_report(*, pr_number: int, max_review_cycles: int) -> str:
    return (
        f"FAILED: PR #{pr_number} exceeded maximum review cycles ({max_review_cycles}). "
        "Reviewers are still requesting changes; manual intervention is required."
    )


def build_review_feedback(
    reviews: Sequence[PullRequestReview],
    comments: Sequence[PullRequestReviewComment],
) -> str:
    parts: list[str] = []
    for review in reviews:
        parts.append(
            f"Review by {review.user_login or 'unknown'} ({review.state}):\n"
            f"{review.body or '(no body)'}"
        )
    if comments:
        parts.append("\nInline review comments:")
        for comment in comments:
            location = f"{comment.path}:{comment.line}" if comment.line else comment.path
            parts.append(
                f"- {comment.user_login or 'unknown'} on `{location}`:\n"
                f"  {comment.body}\n"
                "  ```diff\n"
                f"  {comment.diff_hunk[-_DIFF_HUNK_TAIL_CHARS:]}\n"
                "  ```"
            )
    return "\n\n".join(parts)


def build_review_cycle_description(*, pr_number: int, branch: str, feedback: str) -> str:
    return (
        f"[PR REVIEW CYCLE — PR #{pr_number} on branch `{branch}`]\n\n"
        "This task already has an open PR. A reviewer requested changes.\n"
        "The worker must ONLY address the review feedback below — do NOT redo the "
        "original task.\n\n"
        f"--- REVIEW FEEDBACK ---\n{feedback}\n--- END FEEDBACK ---\n\n"
        f"Instructions: Check out branch `{branch}`, make the requested fixes, commit, "
        "and push. Do NOT create a new branch or PR — pushing to this branch auto-updates "
        f"the existing PR #{pr_number}."
    )


def build_review_fix_directive(
    *,
    task: KanbanTask,
    pr_number: int,
    branch: str,
    feedback: str,
) -> str:
    return (
        f'PR REVIEW FEEDBACK for existing task "{task.title}" ({task.task_id}) — this task '
        "is already in_progress on the kanban board.\n\n"
        "IMPORTANT: Do NOT create any new tasks. Do NOT redo the original work. "
        "Spawn exactly ONE worker to address the review feedback on the EXISTING task "
        f"({task.task_id}). The task description already contains the review feedback and "
        "branch instructions.\n\n"
        f"Assign the worker to task {task.task_id}, then hand it the review feedback.\n\n"
        f"Review summary: PR #{pr_number} on branch `{branch}` received changes-requested.\n"
        f"{feedback}"
    )


def build_re_review_prompt(
    *,
    repo_full_name: str,
    task_id: str,
    branch: str,
    pr_number: int,
) -> str:
    return f"""
You are the re-review agent for repository {repo_full_name}.

Task:
- Pull request #{pr_number} (task {task_id}) was just rebased onto its base branch.
- The rebased branch `{branch}` is checked out in the current working directory.
- Confirm the change still builds, passes its tests, and matches its approved intent.

Response:
- Exit with status 0 if the pull request is safe to merge.
- Exit non-zero and explain the problem on stderr otherwise.
""".strip()


def build_review_feedback_prompt(
    *,
    repo_full_name: str,
    task_id: str,
    branch: str,
    pr_number: int,
    feedback: str,
) -> str:
    return f"""
You are the implementation agent for repository {repo_full_name}.

Task:
- Address reviewer feedback on pull request #{pr_number} (task {task_id}).
- Work on the existing branch `{branch}`; push to it to update the pull request.
- Do not create new branches, pull requests or tasks.

Reviewer feedback:
{feedback}
""".strip()
