"""Shared document keys and broadcast channel names."""

from __future__ import annotations

NAMESPACE = "vaultsync"

# Shared document (top-level keys, last write wins per key)
CONTENT_CACHE_KEY = f"{NAMESPACE}/contentCache"
VISIBLE_TREE_KEY = f"{NAMESPACE}/visibleTree"
VAULT_OWNER_KEY = f"{NAMESPACE}/vaultOwner"

# Broadcast channels
CHANNEL_REQUEST_CONTENT = f"{NAMESPACE}/requestContent"
CHANNEL_RESPONSE_CONTENT = f"{NAMESPACE}/responseContent"
CHANNEL_REQUEST_VISIBLE_TREE = f"{NAMESPACE}/requestVisibleTree"
CHANNEL_VISIBLE_TREE = f"{NAMESPACE}/visibleTree"
CHANNEL_SHOW_IMAGE = f"{NAMESPACE}/showImage"
CHANNEL_REQUEST_FULL_TREE = f"{NAMESPACE}/requestFullTree"
CHANNEL_FULL_TREE = f"{NAMESPACE}/fullTree"
