"""Emergency coordination policy constants."""

from __future__ import annotations

# Hold gesture: full progress after this many ms, sampled every HOLD_SAMPLE_MS
HOLD_DURATION_MS = 3000
HOLD_SAMPLE_MS = 50

# Taps needed inside the rolling window for an instant trigger
RAPID_TAP_COUNT = 3
RAPID_TAP_WINDOW_MS = 1500

# Seconds shown on the confirmation countdown before auto-trigger
CONFIRMATION_SECONDS = 5

# Expanding-radius helper search, kilometers
SEARCH_MIN_RADIUS_KM = 5.0
SEARCH_RADIUS_INCREMENT_KM = 5.0
SEARCH_MAX_RADIUS_KM = 50.0

# Helper-side list of open emergencies, kilometers
NEARBY_EMERGENCY_RADIUS_KM = 20.0

# A user counts as online if last active within this many minutes
ONLINE_WINDOW_MINUTES = 5

# Chat sessions end automatically after this many minutes
CHAT_EXPIRY_MINUTES = 60

# Location fetch: high-accuracy attempt, then one relaxed retry
LOCATION_TIMEOUT_MS = 15000
LOCATION_RETRY_TIMEOUT_MS = 20000
LOCATION_CACHE_MAX_AGE_S = 60

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "System"

MSG_EMERGENCY_ACTIVATED = "EMERGENCY ACTIVATED - Help is being requested"
MSG_EMERGENCY_RESOLVED = "Help has been received! Emergency resolved. Thank you to all helpers!"
MSG_EMERGENCY_EXPIRED = "This emergency chat has ended automatically after 1 hour."
MSG_EMERGENCY_ABORTED = "Emergency could not be set up and was cancelled."
MSG_HELPER_JOINED = "{name} has joined to help"
MSG_VICTIM_LOCATION = "My current location: https://maps.google.com/?q={lat},{lng}"
MSG_SHARED_LOCATION = "Current location: https://maps.google.com/?q={lat},{lng}"

STATUS_MESSAGE_EXPIRED = "This emergency chat has expired after 1 hour."
STATUS_MESSAGE_RESOLVED = "This emergency has been resolved."
