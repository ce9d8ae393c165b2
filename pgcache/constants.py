"""
Constants for pgcache.

Defaults used across modules. Most are also exposed through the config system.
"""

# Cache key family
KEY_PREFIX = "postgrest"
INFINITE_KEY_PREFIX = "page"
KEY_VERSION = 1
NULL_SEGMENT = "null"

# Pagination
DEFAULT_PAGE_SIZE = 20

# Network timeouts (in seconds)
DEFAULT_REQUEST_TIMEOUT = 10

# Schema used when a builder does not name one
DEFAULT_SCHEMA = "public"

# Identity column guessed when no primary key is configured
DEFAULT_IDENTITY_COLUMN = "id"

# Write methods carry a request body
WRITE_METHODS = ("POST", "PATCH", "PUT")
