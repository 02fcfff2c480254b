"""SQLite persistence for watched repos, tracked issues and notifications.

The database is the single source of truth for the auto-fix lifecycle.
WAL mode is enabled so poll workers can read while a request writes, and
every status change goes through :func:`transition_status`, a conditional
``UPDATE`` that only succeeds when the row is still in the expected state.
"""

from __future__ import annotations

import json
import pathlib
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from issue_hunter.models import (
    ISSUE_TYPE,
    QUEUED,
    STATE_CLOSED,
    STATE_OPEN,
    Notification,
    NotificationPreferences,
    TrackedIssue,
    User,
    WatchedRepo,
    is_legal_transition,
)

_INITIALIZED_DBS: set[str] = set()

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    login         TEXT    NOT NULL UNIQUE,
    name          TEXT    NOT NULL DEFAULT '',
    email         TEXT    NOT NULL DEFAULT '',
    avatar_url    TEXT    NOT NULL DEFAULT '',
    access_token  TEXT    NOT NULL DEFAULT '',
    created_at    TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS watched_repos (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    owner          TEXT    NOT NULL COLLATE NOCASE,
    repo           TEXT    NOT NULL COLLATE NOCASE,
    label_filters  TEXT    NOT NULL DEFAULT '[]',
    title_query    TEXT,
    frozen         INTEGER NOT NULL DEFAULT 0,
    is_owned       INTEGER NOT NULL DEFAULT 1,
    fork_owner     TEXT,
    fork_repo      TEXT,
    created_at     TEXT    NOT NULL,
    UNIQUE(user_id, owner, repo)
);

CREATE INDEX IF NOT EXISTS idx_watched_repos_owner_repo ON watched_repos(owner, repo);
CREATE INDEX IF NOT EXISTS idx_watched_repos_frozen     ON watched_repos(frozen);

CREATE TABLE IF NOT EXISTS tracked_issues (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    watched_repo_id    INTEGER NOT NULL REFERENCES watched_repos(id) ON DELETE CASCADE,
    issue_number       INTEGER NOT NULL,
    title              TEXT    NOT NULL DEFAULT '',
    url                TEXT    NOT NULL DEFAULT '',
    type               TEXT    NOT NULL DEFAULT 'issue',
    labels             TEXT    NOT NULL DEFAULT '[]',
    state              TEXT    NOT NULL DEFAULT 'open',
    is_read            INTEGER NOT NULL DEFAULT 0,
    claimed_at         TEXT,
    archived_at        TEXT,
    auto_fix_status    TEXT    NOT NULL DEFAULT 'queued',
    generating_at      TEXT,
    fork_issue_number  INTEGER,
    draft_pr_number    INTEGER,
    draft_pr_url       TEXT,
    draft_pr_owner     TEXT,
    published_at       TEXT,
    closed_at          TEXT,
    notified_at        TEXT,
    created_at         TEXT    NOT NULL,
    UNIQUE(watched_repo_id, issue_number)
);

CREATE INDEX IF NOT EXISTS idx_tracked_issues_status ON tracked_issues(auto_fix_status);
CREATE INDEX IF NOT EXISTS idx_tracked_issues_state  ON tracked_issues(state, archived_at);

CREATE TABLE IF NOT EXISTS notifications (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    issue_id    INTEGER,
    message     TEXT    NOT NULL,
    is_read     INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read);

CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id            INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    email_enabled      INTEGER NOT NULL DEFAULT 0,
    push_enabled       INTEGER NOT NULL DEFAULT 0,
    new_issue_email    INTEGER NOT NULL DEFAULT 1,
    draft_ready_email  INTEGER NOT NULL DEFAULT 1,
    new_issue_push     INTEGER NOT NULL DEFAULT 1,
    draft_ready_push   INTEGER NOT NULL DEFAULT 1,
    push_subscription  TEXT
);
"""

_WATCHED_REPO_COLUMNS = {"label_filters", "title_query", "frozen"}
_ISSUE_COLUMNS = {
    "is_read", "claimed_at", "archived_at", "generating_at",
    "fork_issue_number", "draft_pr_number", "draft_pr_url", "draft_pr_owner",
    "published_at", "closed_at", "state",
}
_PREFERENCE_COLUMNS = {
    "email_enabled", "push_enabled", "new_issue_email", "draft_ready_email",
    "new_issue_push", "draft_ready_push",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def get_connection(db_path: str | pathlib.Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    str_path = str(db_path)
    if str_path not in _INITIALIZED_DBS:
        init_db(conn)
        _INITIALIZED_DBS.add(str_path)
    return conn


@contextmanager
def db_connection(db_path: str | pathlib.Path) -> Iterator[sqlite3.Connection]:
    """Context manager that yields a DB connection and closes it on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)


def _assignments(fields: dict[str, Any], allowed: set[str]) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    parts = [f"{col} = ?" for col in fields]
    return ", ".join(parts), list(fields.values())


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def upsert_user(
    conn: sqlite3.Connection,
    login: str,
    access_token: str,
    name: str = "",
    email: str = "",
    avatar_url: str = "",
) -> int:
    conn.execute(
        """INSERT INTO users (login, name, email, avatar_url, access_token, created_at)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(login) DO UPDATE SET
               name = excluded.name,
               email = excluded.email,
               avatar_url = excluded.avatar_url,
               access_token = excluded.access_token""",
        (login, name, email, avatar_url, access_token, utc_now()),
    )
    conn.commit()
    row = conn.execute("SELECT id FROM users WHERE login = ?", (login,)).fetchone()
    return row["id"]


def get_user(conn: sqlite3.Connection, user_id: int) -> User | None:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return User.from_row(row) if row else None


# ---------------------------------------------------------------------------
# Watched repos
# ---------------------------------------------------------------------------

def insert_watched_repo(
    conn: sqlite3.Connection,
    user_id: int,
    owner: str,
    repo: str,
    label_filters: list[str] | None = None,
    title_query: str | None = None,
    is_owned: bool = True,
    fork_owner: str | None = None,
    fork_repo: str | None = None,
) -> int | None:
    """Insert a watched repo, returning ``None`` if the user already watches it."""
    try:
        cur = conn.execute(
            """INSERT INTO watched_repos
               (user_id, owner, repo, label_filters, title_query, is_owned,
                fork_owner, fork_repo, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id, owner, repo,
                json.dumps(sorted(set(label_filters or []))),
                title_query or None,
                int(bool(is_owned)),
                fork_owner, fork_repo,
                utc_now(),
            ),
        )
    except sqlite3.IntegrityError:
        return None
    conn.commit()
    return cur.lastrowid


def find_watched_repo(
    conn: sqlite3.Connection, user_id: int, owner: str, repo: str,
) -> WatchedRepo | None:
    row = conn.execute(
        "SELECT * FROM watched_repos WHERE user_id = ? AND owner = ? AND repo = ?",
        (user_id, owner, repo),
    ).fetchone()
    return WatchedRepo.from_row(row) if row else None


def get_watched_repo(
    conn: sqlite3.Connection, repo_id: int, user_id: int | None = None,
) -> WatchedRepo | None:
    if user_id is None:
        row = conn.execute(
            "SELECT * FROM watched_repos WHERE id = ?", (repo_id,)
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM watched_repos WHERE id = ? AND user_id = ?",
            (repo_id, user_id),
        ).fetchone()
    return WatchedRepo.from_row(row) if row else None


def list_watched_repos(conn: sqlite3.Connection, user_id: int) -> list[dict]:
    rows = conn.execute(
        """SELECT wr.*, COUNT(ti.id) AS tracked_issue_count
           FROM watched_repos wr
           LEFT JOIN tracked_issues ti ON ti.watched_repo_id = wr.id
           WHERE wr.user_id = ?
           GROUP BY wr.id
           ORDER BY wr.created_at DESC, wr.id DESC""",
        (user_id,),
    ).fetchall()
    items = []
    for row in rows:
        d = WatchedRepo.from_row(row).to_dict()
        d["tracked_issue_count"] = row["tracked_issue_count"]
        items.append(d)
    return items


def list_active_watched_repos(
    conn: sqlite3.Connection, user_id: int | None = None,
) -> list[WatchedRepo]:
    if user_id is None:
        rows = conn.execute(
            "SELECT * FROM watched_repos WHERE frozen = 0 ORDER BY id"
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM watched_repos WHERE frozen = 0 AND user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
    return [WatchedRepo.from_row(r) for r in rows]


def list_watchers(conn: sqlite3.Connection, owner: str, repo: str) -> list[WatchedRepo]:
    rows = conn.execute(
        """SELECT * FROM watched_repos
           WHERE owner = ? COLLATE NOCASE AND repo = ? COLLATE NOCASE AND frozen = 0
           ORDER BY id""",
        (owner, repo),
    ).fetchall()
    return [WatchedRepo.from_row(r) for r in rows]


def update_watched_repo(conn: sqlite3.Connection, repo_id: int, **fields: Any) -> bool:
    if "label_filters" in fields:
        fields["label_filters"] = json.dumps(sorted(set(fields["label_filters"] or [])))
    if "frozen" in fields:
        fields["frozen"] = int(bool(fields["frozen"]))
    if "title_query" in fields:
        fields["title_query"] = fields["title_query"] or None
    if not fields:
        return False
    sql, params = _assignments(fields, _WATCHED_REPO_COLUMNS)
    cur = conn.execute(
        f"UPDATE watched_repos SET {sql} WHERE id = ?", [*params, repo_id],
    )
    conn.commit()
    return cur.rowcount > 0


def delete_watched_repo(conn: sqlite3.Connection, repo_id: int, user_id: int) -> bool:
    cur = conn.execute(
        "DELETE FROM watched_repos WHERE id = ? AND user_id = ?", (repo_id, user_id),
    )
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Tracked issues
# ---------------------------------------------------------------------------

def tracked_issue_exists(conn: sqlite3.Connection, watched_repo_id: int, issue_number: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM tracked_issues WHERE watched_repo_id = ? AND issue_number = ?",
        (watched_repo_id, issue_number),
    ).fetchone()
    return row is not None


def insert_tracked_issue(
    conn: sqlite3.Connection,
    watched_repo_id: int,
    issue_number: int,
    title: str,
    url: str,
    labels: list[str],
    issue_type: str = ISSUE_TYPE,
    auto_fix_status: str = QUEUED,
) -> int | None:
    """Create a tracked issue, returning ``None`` if one already exists.

    ``ON CONFLICT DO NOTHING`` makes the uniqueness check and the insert a
    single statement, so two concurrent discovery passes cannot both
    create a row for the same upstream issue.
    """
    now = utc_now()
    cur = conn.execute(
        """INSERT INTO tracked_issues
           (watched_repo_id, issue_number, title, url, type, labels,
            auto_fix_status, notified_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(watched_repo_id, issue_number) DO NOTHING""",
        (
            watched_repo_id, issue_number, title, url, issue_type,
            json.dumps(labels), auto_fix_status, now, now,
        ),
    )
    conn.commit()
    if cur.rowcount == 0:
        return None
    return cur.lastrowid


def get_tracked_issue(conn: sqlite3.Connection, issue_id: int) -> TrackedIssue | None:
    row = conn.execute(
        "SELECT * FROM tracked_issues WHERE id = ?", (issue_id,)
    ).fetchone()
    return TrackedIssue.from_row(row) if row else None


def get_issue_with_repo(
    conn: sqlite3.Connection, issue_id: int, user_id: int | None = None,
) -> tuple[TrackedIssue, WatchedRepo] | None:
    """Load a tracked issue together with its watched repo.

    When *user_id* is given the issue must belong to one of that user's
    watched repos, otherwise ``None`` is returned.
    """
    issue = get_tracked_issue(conn, issue_id)
    if issue is None:
        return None
    repo = get_watched_repo(conn, issue.watched_repo_id, user_id=user_id)
    if repo is None:
        return None
    return issue, repo


def _issue_items(rows: list[sqlite3.Row]) -> list[dict]:
    items = []
    for row in rows:
        d = TrackedIssue.from_row(row).to_dict()
        d["owner"] = row["repo_owner"]
        d["repo"] = row["repo_name"]
        items.append(d)
    return items


def query_issues_for_user(
    conn: sqlite3.Connection,
    user_id: int,
    status: str = "",
    unread_only: bool = False,
) -> list[dict]:
    conditions = ["wr.user_id = ?"]
    params: list[Any] = [user_id]
    if status:
        conditions.append("ti.auto_fix_status = ?")
        params.append(status)
    if unread_only:
        conditions.append("ti.is_read = 0")
    rows = conn.execute(
        f"""SELECT ti.*, wr.owner AS repo_owner, wr.repo AS repo_name
            FROM tracked_issues ti
            JOIN watched_repos wr ON wr.id = ti.watched_repo_id
            WHERE {' AND '.join(conditions)}
            ORDER BY ti.created_at DESC, ti.id DESC""",
        params,
    ).fetchall()
    return _issue_items(rows)


def list_issue_ids_by_status(conn: sqlite3.Connection, status: str) -> list[int]:
    rows = conn.execute(
        "SELECT id FROM tracked_issues WHERE auto_fix_status = ? ORDER BY id",
        (status,),
    ).fetchall()
    return [r["id"] for r in rows]


def list_open_unarchived_issues(conn: sqlite3.Connection) -> list[tuple[TrackedIssue, WatchedRepo]]:
    rows = conn.execute(
        """SELECT id FROM tracked_issues
           WHERE state = ? AND archived_at IS NULL
           ORDER BY id""",
        (STATE_OPEN,),
    ).fetchall()
    pairs = []
    for r in rows:
        pair = get_issue_with_repo(conn, r["id"])
        if pair is not None:
            pairs.append(pair)
    return pairs


def transition_status(
    conn: sqlite3.Connection,
    issue_id: int,
    from_status: str,
    to_status: str,
    extra_conditions: str = "",
    **fields: Any,
) -> bool:
    """Move an issue from *from_status* to *to_status* if it is still there.

    This is the only write path for ``auto_fix_status``.  The update is
    conditional on the current status so concurrent pollers, webhooks and
    human actions cannot double-process the same issue; ``True`` means
    this caller won the transition.  Illegal edges raise ``ValueError``.
    """
    if not is_legal_transition(from_status, to_status):
        raise ValueError(f"Illegal auto-fix transition: {from_status} -> {to_status}")
    sql, params = ("", [])
    if fields:
        sql, params = _assignments(fields, _ISSUE_COLUMNS)
        sql = ", " + sql
    where = "id = ? AND auto_fix_status = ?"
    if extra_conditions:
        where += f" AND {extra_conditions}"
    cur = conn.execute(
        f"UPDATE tracked_issues SET auto_fix_status = ?{sql} WHERE {where}",
        [to_status, *params, issue_id, from_status],
    )
    conn.commit()
    return cur.rowcount == 1


def update_issue(conn: sqlite3.Connection, issue_id: int, **fields: Any) -> bool:
    if not fields:
        return False
    sql, params = _assignments(fields, _ISSUE_COLUMNS)
    cur = conn.execute(
        f"UPDATE tracked_issues SET {sql} WHERE id = ?", [*params, issue_id],
    )
    conn.commit()
    return cur.rowcount > 0


def close_and_archive_issue(
    conn: sqlite3.Connection, issue_id: int, closed_at: str, archived_at: str,
) -> bool:
    cur = conn.execute(
        """UPDATE tracked_issues
           SET state = ?, closed_at = ?, archived_at = ?
           WHERE id = ? AND state = ? AND archived_at IS NULL""",
        (STATE_CLOSED, closed_at, archived_at, issue_id, STATE_OPEN),
    )
    conn.commit()
    return cur.rowcount == 1


def set_archived(conn: sqlite3.Connection, issue_id: int, archived: bool) -> bool:
    """Archive or restore an issue; returns ``False`` if it was already so."""
    if archived:
        cur = conn.execute(
            "UPDATE tracked_issues SET archived_at = ? WHERE id = ? AND archived_at IS NULL",
            (utc_now(), issue_id),
        )
    else:
        cur = conn.execute(
            "UPDATE tracked_issues SET archived_at = NULL WHERE id = ? AND archived_at IS NOT NULL",
            (issue_id,),
        )
    conn.commit()
    return cur.rowcount == 1


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def insert_notification(
    conn: sqlite3.Connection, user_id: int, message: str, issue_id: int | None = None,
) -> int:
    cur = conn.execute(
        """INSERT INTO notifications (user_id, issue_id, message, is_read, created_at)
           VALUES (?, ?, ?, 0, ?)""",
        (user_id, issue_id, message, utc_now()),
    )
    conn.commit()
    return cur.lastrowid or 0


def query_notifications(
    conn: sqlite3.Connection, user_id: int, unread_only: bool = False, limit: int = 50,
) -> list[dict]:
    sql = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        sql += " AND is_read = 0"
    sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
    rows = conn.execute(sql, (user_id, limit)).fetchall()
    items = []
    for row in rows:
        d = Notification.from_row(row).to_dict()
        issue = get_issue_with_repo(conn, row["issue_id"]) if row["issue_id"] else None
        if issue is not None:
            tracked, repo = issue
            d["issue"] = {
                "id": tracked.id,
                "issue_number": tracked.issue_number,
                "title": tracked.title,
                "url": tracked.url,
                "owner": repo.owner,
                "repo": repo.repo,
            }
        else:
            d["issue"] = None
        items.append(d)
    return items


def mark_notification_read(conn: sqlite3.Connection, notification_id: int, user_id: int) -> bool:
    cur = conn.execute(
        "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
        (notification_id, user_id),
    )
    conn.commit()
    return cur.rowcount > 0


def mark_all_notifications_read(conn: sqlite3.Connection, user_id: int) -> int:
    cur = conn.execute(
        "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
        (user_id,),
    )
    conn.commit()
    return cur.rowcount


def unread_notification_count(conn: sqlite3.Connection, user_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0",
        (user_id,),
    ).fetchone()
    return row[0]


# ---------------------------------------------------------------------------
# Notification preferences
# ---------------------------------------------------------------------------

def get_preferences(conn: sqlite3.Connection, user_id: int) -> NotificationPreferences | None:
    row = conn.execute(
        "SELECT * FROM notification_preferences WHERE user_id = ?", (user_id,)
    ).fetchone()
    return NotificationPreferences.from_row(row) if row else None


def upsert_preferences(conn: sqlite3.Connection, user_id: int, **fields: Any) -> NotificationPreferences:
    values = {k: int(bool(v)) for k, v in fields.items()}
    _assignments(values, _PREFERENCE_COLUMNS)
    conn.execute(
        "INSERT INTO notification_preferences (user_id) VALUES (?) ON CONFLICT(user_id) DO NOTHING",
        (user_id,),
    )
    if values:
        sql, params = _assignments(values, _PREFERENCE_COLUMNS)
        conn.execute(
            f"UPDATE notification_preferences SET {sql} WHERE user_id = ?",
            [*params, user_id],
        )
    conn.commit()
    row = conn.execute(
        "SELECT * FROM notification_preferences WHERE user_id = ?", (user_id,)
    ).fetchone()
    return NotificationPreferences.from_row(row)


def set_push_subscription(
    conn: sqlite3.Connection, user_id: int, subscription: dict | None,
) -> None:
    """Store (or clear, when *subscription* is ``None``) the push endpoint.

    Storing a subscription enables push; clearing it disables push so the
    dispatcher never retries a dead endpoint.
    """
    raw = json.dumps(subscription) if subscription is not None else None
    enabled = int(subscription is not None)
    conn.execute(
        """INSERT INTO notification_preferences (user_id, push_subscription, push_enabled)
           VALUES (?, ?, ?)
           ON CONFLICT(user_id) DO UPDATE SET
               push_subscription = excluded.push_subscription,
               push_enabled = excluded.push_enabled""",
        (user_id, raw, enabled),
    )
    conn.commit()
