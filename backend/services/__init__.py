# services/__init__.py
# ============================================================================
# MCNATION STORE BACKEND — SERVICES MODULE
# ============================================================================
# Clients for the two remote systems: Stripe and the game server command API
# ============================================================================

from services.server_commands import (
    ServerCommandClient,
    ServerCommandConfig,
    build_grant_command,
    sanitize_package_name,
    sanitize_username,
)

from services.stripe_provider import (
    IPaymentProvider,
    StripePaymentProvider,
)

__all__ = [
    # Game server
    "ServerCommandClient",
    "ServerCommandConfig",
    "build_grant_command",
    "sanitize_package_name",
    "sanitize_username",
    # Stripe
    "IPaymentProvider",
    "StripePaymentProvider",
]
