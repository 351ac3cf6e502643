"""
CRUD operations module.
"""

from oauth_core.crud.integration import (
    create_or_update_integration,
    deactivate_integration,
    get_decrypted_tokens,
    get_integration_status,
    get_user_integration,
    get_user_integrations,
    list_integrations,
    set_refresh_token_ciphertext,
    update_refreshed_tokens,
)

from oauth_core.crud.oauth_state import (
    cleanup_expired_states_db,
    consume_oauth_state_db,
    store_oauth_state_db,
)

from oauth_core.crud.pkce_verifier import (
    cleanup_expired_verifiers_db,
    consume_pkce_verifier_db,
    store_pkce_verifier_db,
)

from oauth_core.crud.audit_log import (
    get_audit_logs,
    record_audit_event,
)

__all__ = [
    # Integration
    "create_or_update_integration",
    "deactivate_integration",
    "get_decrypted_tokens",
    "get_integration_status",
    "get_user_integration",
    "get_user_integrations",
    "list_integrations",
    "set_refresh_token_ciphertext",
    "update_refreshed_tokens",
    # OAuth state
    "cleanup_expired_states_db",
    "consume_oauth_state_db",
    "store_oauth_state_db",
    # PKCE
    "cleanup_expired_verifiers_db",
    "consume_pkce_verifier_db",
    "store_pkce_verifier_db",
    # Audit
    "get_audit_logs",
    "record_audit_event",
]
