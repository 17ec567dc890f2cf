"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Sign-in reads its limit from settings.login_rate_limit. These per-IP limits
sit in front of the per-token attempt lock in auth/verification.py; they do
not replace it.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

FORGOT_PASSWORD_LIMIT = "5/hour"
RESEND_VERIFICATION_LIMIT = "3/hour;10/day"
# reset-password and verify-email: a link-token miss has no owner to lock.
TOKEN_REDEMPTION_LIMIT = "10/minute"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
