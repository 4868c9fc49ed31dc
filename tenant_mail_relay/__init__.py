"""Tenant-scoped outbound mail relay.

Clients register a domain and receive a bearer token scoped to it. Messages
submitted with that token are either sent immediately or stored in a
persistent queue that a background worker drains with unlimited retry.
Successfully delivered messages are copied into an archive whose size is kept
under a configured ceiling by a second background loop.

Example:
    Basic usage with the FastAPI application::

        from tenant_mail_relay.core import RelayCore
        from tenant_mail_relay.api import create_app

        core = RelayCore(db_path="/data/relay.db", smtp_host="smtp.local")
        app = create_app(core, api_token="secret")
"""

__version__ = "0.1.0"
