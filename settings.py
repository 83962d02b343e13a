# Configuration for the relay proxy. Every value can be overridden from the environment.

import os

# --- Server ---
PROXY_HOST = os.environ.get('PROXY_HOST', '0.0.0.0')
PROXY_PORT = int(os.environ.get('PROXY_PORT', '8001'))
LOG_LEVEL = os.environ.get('PROXY_LOG_LEVEL', 'INFO').upper()

# Largest inbound body Flask will accept (bytes)
MAX_CONTENT_LENGTH = int(os.environ.get('PROXY_MAX_BODY', str(50 * 1024 * 1024)))

# --- Endpoints ---
RELAY_PATH = '/api/proxy'
HEALTH_PATH = '/api/health'

# --- Upstream ---
# Unset means the upstream call may block as long as the transport allows.
_timeout = os.environ.get('PROXY_UPSTREAM_TIMEOUT')
UPSTREAM_TIMEOUT = float(_timeout) if _timeout else None

DEFAULT_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'
DEFAULT_ACCEPT = 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8'
DEFAULT_ACCEPT_LANGUAGE = 'en-US,en;q=0.9'
ACCEPT_ENCODING = 'gzip, deflate, br'
