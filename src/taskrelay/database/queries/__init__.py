"""Database query functions for taskrelay.

This module provides async query functions for all database entities:
- Task creation, listing and conditional status updates
- User lookup and the conditional availability write
- User session liveness, expiry and purging
- Extension request creation and one-shot resolution
- Task audit log entries
"""

from taskrelay.database.queries.audit import list_task_logs, log_task_action
from taskrelay.database.queries.extension import (
    create_extension_request,
    get_extension_request,
    get_pending_request_for_task,
    list_extension_requests,
    resolve_extension_request,
)
from taskrelay.database.queries.session import (
    count_live_sessions,
    create_user_session,
    deactivate_session,
    deactivate_user_sessions,
    expire_sessions,
    fingerprint_token,
    get_active_session_by_token,
    purge_sessions,
    touch_user_session,
)
from taskrelay.database.queries.task import (
    add_task_duration,
    count_holding_tasks,
    create_task,
    get_next_queue_order,
    get_next_queued_task,
    get_task,
    list_holding_tasks,
    list_tasks,
    list_timed_tasks,
    set_attention_flag,
    update_task_if_status,
)
from taskrelay.database.queries.user import (
    create_user,
    get_user,
    list_users,
    update_availability_if,
)

__all__ = [
    # Task queries
    "create_task",
    "get_task",
    "list_tasks",
    "update_task_if_status",
    "add_task_duration",
    "count_holding_tasks",
    "list_holding_tasks",
    "list_timed_tasks",
    "get_next_queued_task",
    "get_next_queue_order",
    "set_attention_flag",
    # User queries
    "create_user",
    "get_user",
    "list_users",
    "update_availability_if",
    # Session queries
    "fingerprint_token",
    "create_user_session",
    "get_active_session_by_token",
    "touch_user_session",
    "deactivate_session",
    "deactivate_user_sessions",
    "count_live_sessions",
    "expire_sessions",
    "purge_sessions",
    # Extension queries
    "create_extension_request",
    "get_extension_request",
    "get_pending_request_for_task",
    "list_extension_requests",
    "resolve_extension_request",
    # Audit queries
    "log_task_action",
    "list_task_logs",
]
