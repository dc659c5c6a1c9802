"""Slack Web API integration."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_process_notification(
    task_id: str,
    title: str,
    run_reason: str,
    status: str,
    branch: str | None = None,
    summary: str | None = None,
) -> list[dict]:
    """Format an execution process completion as Slack blocks."""
    status_emoji = {
        "completed": ":white_check_mark:",
        "failed": ":x:",
        "killed": ":octagonal_sign:",
    }
    emoji = status_emoji.get(status, ":grey_question:")
    label = run_reason.replace("_", " ")

    text = f"{emoji} *{label.capitalize()} {status}*\n*{title}* (`{task_id}`)"
    if branch:
        text += f"\nBranch: `{branch}`"
    if summary:
        text += f"\n{summary[:200]}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def format_pr_review_request(
    task_id: str,
    title: str,
    branch: str,
    pr_url: str | None = None,
) -> list[dict]:
    """Format a PR review request as Slack blocks."""
    pr_link = f"\n<{pr_url}|View Pull Request>" if pr_url else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":eyes: *Review Requested*\n*{title}* (`{task_id}`)\nBranch: `{branch}`{pr_link}",
            },
        },
    ]
