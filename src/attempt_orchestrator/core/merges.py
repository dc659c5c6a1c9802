"""Merge records: direct squash merges and pull requests."""

import sqlite3
import uuid
from datetime import datetime

from attempt_orchestrator.db.models import Merge, PullRequestInfo


def create_direct(
    db: sqlite3.Connection,
    attempt_id: str,
    target_branch: str,
    merge_commit: str,
) -> Merge:
    merge_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO merges (id, task_attempt_id, merge_type, target_branch, merge_commit)
           VALUES (?, ?, 'direct', ?, ?)""",
        (merge_id, attempt_id, target_branch, merge_commit),
    )
    db.commit()
    return get_merge(db, merge_id)


def create_pr(
    db: sqlite3.Connection,
    attempt_id: str,
    target_branch: str,
    pr_number: int,
    pr_url: str,
) -> Merge:
    merge_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO merges
           (id, task_attempt_id, merge_type, target_branch, pr_number, pr_url, pr_status)
           VALUES (?, ?, 'pr', ?, ?, ?, 'open')""",
        (merge_id, attempt_id, target_branch, pr_number, pr_url),
    )
    db.commit()
    return get_merge(db, merge_id)


def update_pr_status(
    db: sqlite3.Connection,
    merge_id: str,
    status: str,
    merged_at: datetime | None = None,
    merge_commit_sha: str | None = None,
) -> Merge | None:
    db.execute(
        """UPDATE merges SET pr_status = ?, pr_merged_at = ?, pr_merge_commit_sha = ?
           WHERE id = ?""",
        (status, merged_at.isoformat() if merged_at else None, merge_commit_sha, merge_id),
    )
    db.commit()
    return get_merge(db, merge_id)


def get_merge(db: sqlite3.Connection, merge_id: str) -> Merge | None:
    row = db.execute("SELECT * FROM merges WHERE id = ?", (merge_id,)).fetchone()
    if not row:
        return None
    return _row_to_merge(row)


def find_by_attempt(db: sqlite3.Connection, attempt_id: str) -> list[Merge]:
    """Merges of an attempt, newest first."""
    rows = db.execute(
        "SELECT * FROM merges WHERE task_attempt_id = ? ORDER BY created_at DESC, rowid DESC",
        (attempt_id,),
    ).fetchall()
    return [_row_to_merge(r) for r in rows]


def merged_attempt_ids(db: sqlite3.Connection) -> set[str]:
    """Attempts with a direct merge or a merged pull request."""
    rows = db.execute(
        """SELECT DISTINCT task_attempt_id FROM merges
           WHERE merge_type = 'direct' OR pr_status = 'merged'"""
    ).fetchall()
    return {r["task_attempt_id"] for r in rows}


def merge_to_dict(merge: Merge) -> dict:
    if merge.merge_type == "direct":
        return {
            "type": "direct",
            "id": merge.id,
            "merge_commit": merge.merge_commit,
            "target_branch_name": merge.target_branch,
            "created_at": merge.created_at.isoformat() if merge.created_at else None,
        }
    pr = merge.pr_info
    return {
        "type": "pr",
        "id": merge.id,
        "target_branch_name": merge.target_branch,
        "created_at": merge.created_at.isoformat() if merge.created_at else None,
        "pr_info": {
            "number": pr.number,
            "url": pr.url,
            "status": pr.status,
            "merged_at": pr.merged_at.isoformat() if pr.merged_at else None,
            "merge_commit_sha": pr.merge_commit_sha,
        },
    }


def _row_to_merge(row: sqlite3.Row) -> Merge:
    pr_info = None
    if row["merge_type"] == "pr":
        pr_info = PullRequestInfo(
            number=row["pr_number"],
            url=row["pr_url"],
            status=row["pr_status"],
            merged_at=_parse_dt(row["pr_merged_at"]),
            merge_commit_sha=row["pr_merge_commit_sha"],
        )
    return Merge(
        id=row["id"],
        task_attempt_id=row["task_attempt_id"],
        merge_type=row["merge_type"],
        target_branch=row["target_branch"],
        merge_commit=row["merge_commit"],
        pr_info=pr_info,
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
