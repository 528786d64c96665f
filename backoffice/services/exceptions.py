"""
Exceptions raised by the integration services.
Controllers and main.py translate these into the {success, error} envelope.
"""


class IntegrationError(Exception):
    """Base exception for all external-system integration errors"""
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        return {"success": False, "error": self.message}


class NotConfiguredError(IntegrationError):
    """Credentials or secrets are missing; raised before any network call"""
    status_code = 503


class ErpError(IntegrationError):
    status_code = 502


class ErpUnavailable(ErpError):
    """Login produced neither a session cookie nor a redirect, or the ERP could not be reached"""


class ErpSessionExpired(ErpError):
    """Response carried login-page markers or an unauthorized status; cached session was cleared"""


class B2BError(IntegrationError):
    status_code = 502


class B2BAuthError(B2BError):
    """Identity bridge or token endpoint answered non-2xx"""

    def __init__(self, message, status=None, body=None):
        super().__init__(message, {"status": status})
        self.status = status
        self.body = body


class AssertionParseError(B2BAuthError):
    """Identity bridge HTML did not contain an assertion value"""


class B2BRequestError(B2BError):
    """Data endpoint answered non-2xx"""

    def __init__(self, message, status=None, body=None):
        super().__init__(message, {"status": status})
        self.status = status
        self.body = body


class ShipmentNotFound(IntegrationError):
    status_code = 404

    def __init__(self, shipment_id):
        super().__init__(f"Shipment {shipment_id} not found")
        self.shipment_id = shipment_id
