"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `tenant_billing/main.py` (retry workers, migrations).
"""

# Import side-effects: register ORM mappings.
from tenant_billing.models import (  # noqa: F401
    billing,
    webhook_event,
)
