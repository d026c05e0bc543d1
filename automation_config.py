"""
Configuration settings for the browser-session automation engine.

Values can be overridden through environment variables where noted.
"""

import os

# Directory for recorded actions, schedules, runs and saved sessions
DATA_DIR = os.environ.get("AUTOMATION_DATA_DIR", "output/automation")

# Browser headless mode
# False = browser window visible (useful when recording by hand)
# True = browser runs in background
HEADLESS = os.environ.get("AUTOMATION_HEADLESS", "true").lower() != "false"

# Navigation timeout in milliseconds (login, capture start, replay navigate)
NAVIGATION_TIMEOUT_MS = 30000

# Overall budget for one login attempt, in seconds
LOGIN_TIMEOUT = 60

# How long a cached authenticated session stays usable, in hours
SESSION_TTL_HOURS = 24

# Passphrase used to encrypt cached sessions. Any string works; it is
# stretched into a Fernet key. Change this in production.
SESSION_ENCRYPTION_KEY = os.environ.get(
    "SESSION_ENCRYPTION_KEY", "default-session-key-change-in-production"
)

# Fixed delay between highlighted steps during "play all", in seconds
PLAYBACK_STEP_DELAY = 1.0

# Step retry budget (attempts per step, including the first one)
MAX_RETRIES = 3

# Retry backoff: base delay in seconds, multiplier, and ceiling
RETRY_DELAY = 1.0
RETRY_BACKOFF = 2.0
RETRY_MAX_DELAY = 10.0

# Pause between replayed steps during a run, in seconds
RUN_STEP_DELAY = 0.5

# Per-step timeout for selector resolution and element actions, in ms
STEP_TIMEOUT_MS = 15000

# Capture pipeline: max queued raw events before producers wait
CAPTURE_QUEUE_SIZE = 1000

# Capture screenshots: on/off and hard cap per recording
CAPTURE_SCREENSHOTS = True
MAX_CAPTURE_SCREENSHOTS = 50

# Seconds stop_capture() waits for in-flight screenshots before flushing
SCREENSHOT_FLUSH_TIMEOUT = 2.0

# Max buffered log events per stream subscriber (oldest dropped when full)
STREAM_QUEUE_SIZE = 500

# Finished runs (and their terminal stream events) kept in memory; older
# ones are served from the record store
MAX_FINISHED_RUNS = 200

# Scheduler poll interval in seconds
SCHEDULER_POLL_INTERVAL = 30

# SSO providers treated as a temporary detour when no list is configured
DEFAULT_SSO_PROVIDERS = [
    "*.auth0.com",
    "*.okta.com",
    "*.microsoftonline.com",
    "accounts.google.com",
    "login.salesforce.com",
]

# Chromium launch arguments
BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--start-maximized",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

ANTI_DETECT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
"""

# HTTP API port
API_PORT = int(os.environ.get("AUTOMATION_API_PORT", "8080"))
