"""Row-level security policies keyed on the bound principal."""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None

_SCOPED_TABLES = (
    "refresh_tokens",
    "notes",
    "friendships",
    "note_shares",
    "notifications",
    "audit_logs",
    "security_events",
)

# A NULL principal is the system path.
_CURRENT_USER_FUNCTION = """
CREATE OR REPLACE FUNCTION app_current_user_id() RETURNS uuid
LANGUAGE sql STABLE
AS $$ SELECT NULLIF(current_setting('app.user_id', true), '')::uuid $$
"""

_POLICIES: tuple[tuple[str, str, str, str | None, str | None], ...] = (
    # (name, table, command, USING, WITH CHECK)
    (
        "refresh_tokens_system_all",
        "refresh_tokens",
        "ALL",
        "app_current_user_id() IS NULL",
        "app_current_user_id() IS NULL",
    ),
    (
        "refresh_tokens_owner_select",
        "refresh_tokens",
        "SELECT",
        "user_id = app_current_user_id()",
        None,
    ),
    ("notes_owner_select", "notes", "SELECT", "user_id = app_current_user_id()", None),
    (
        "notes_shared_select",
        "notes",
        "SELECT",
        "EXISTS (SELECT 1 FROM note_shares s WHERE s.note_id = notes.id "
        "AND s.shared_with_id = app_current_user_id())",
        None,
    ),
    ("notes_owner_insert", "notes", "INSERT", None, "user_id = app_current_user_id()"),
    (
        "notes_owner_update",
        "notes",
        "UPDATE",
        "user_id = app_current_user_id()",
        "user_id = app_current_user_id()",
    ),
    (
        "notes_shared_write_update",
        "notes",
        "UPDATE",
        "EXISTS (SELECT 1 FROM note_shares s WHERE s.note_id = notes.id "
        "AND s.shared_with_id = app_current_user_id() AND s.permission = 'write')",
        "EXISTS (SELECT 1 FROM note_shares s WHERE s.note_id = notes.id "
        "AND s.shared_with_id = app_current_user_id() AND s.permission = 'write')",
    ),
    ("notes_owner_delete", "notes", "DELETE", "user_id = app_current_user_id()", None),
    (
        "note_shares_participant_select",
        "note_shares",
        "SELECT",
        "owner_id = app_current_user_id() OR shared_with_id = app_current_user_id()",
        None,
    ),
    (
        "note_shares_owner_insert",
        "note_shares",
        "INSERT",
        None,
        "owner_id = app_current_user_id() AND EXISTS (SELECT 1 FROM notes n "
        "WHERE n.id = note_id AND n.user_id = app_current_user_id())",
    ),
    (
        "note_shares_owner_update",
        "note_shares",
        "UPDATE",
        "owner_id = app_current_user_id()",
        "owner_id = app_current_user_id()",
    ),
    (
        "note_shares_participant_delete",
        "note_shares",
        "DELETE",
        "owner_id = app_current_user_id() OR shared_with_id = app_current_user_id()",
        None,
    ),
    (
        "friendships_participant_select",
        "friendships",
        "SELECT",
        "user_id = app_current_user_id() OR friend_id = app_current_user_id()",
        None,
    ),
    (
        "friendships_requester_insert",
        "friendships",
        "INSERT",
        None,
        "user_id = app_current_user_id()",
    ),
    (
        "friendships_participant_update",
        "friendships",
        "UPDATE",
        "user_id = app_current_user_id() OR friend_id = app_current_user_id()",
        "user_id = app_current_user_id() OR friend_id = app_current_user_id()",
    ),
    (
        "friendships_participant_delete",
        "friendships",
        "DELETE",
        "user_id = app_current_user_id() OR friend_id = app_current_user_id()",
        None,
    ),
    (
        "notifications_owner_select",
        "notifications",
        "SELECT",
        "user_id = app_current_user_id()",
        None,
    ),
    (
        "notifications_owner_update",
        "notifications",
        "UPDATE",
        "user_id = app_current_user_id()",
        "user_id = app_current_user_id()",
    ),
    (
        "notifications_owner_delete",
        "notifications",
        "DELETE",
        "user_id = app_current_user_id()",
        None,
    ),
    ("notifications_any_insert", "notifications", "INSERT", None, "true"),
    (
        "notifications_system_select",
        "notifications",
        "SELECT",
        "app_current_user_id() IS NULL",
        None,
    ),
    (
        "notifications_system_delete",
        "notifications",
        "DELETE",
        "app_current_user_id() IS NULL",
        None,
    ),
    ("audit_logs_any_insert", "audit_logs", "INSERT", None, "true"),
    (
        "audit_logs_owner_select",
        "audit_logs",
        "SELECT",
        "app_current_user_id() IS NULL OR user_id = app_current_user_id()",
        None,
    ),
    ("security_events_any_insert", "security_events", "INSERT", None, "true"),
    (
        "security_events_system_select",
        "security_events",
        "SELECT",
        "app_current_user_id() IS NULL",
        None,
    ),
)


def _create_policy(
    name: str, table: str, command: str, using: str | None, check: str | None
) -> None:
    """Create one permissive policy."""
    statement = f"CREATE POLICY {name} ON {table} FOR {command}"
    if using is not None:
        statement += f" USING ({using})"
    if check is not None:
        statement += f" WITH CHECK ({check})"
    op.execute(statement)


def upgrade() -> None:
    """Enable and force row security, then install policies."""
    op.execute(_CURRENT_USER_FUNCTION)
    for table in _SCOPED_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
    for policy in _POLICIES:
        _create_policy(*policy)


def downgrade() -> None:
    """Drop policies, disable row security and remove the principal function."""
    for name, table, *_ in reversed(_POLICIES):
        op.execute(f"DROP POLICY IF EXISTS {name} ON {table}")
    for table in _SCOPED_TABLES:
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
    op.execute("DROP FUNCTION IF EXISTS app_current_user_id()")
