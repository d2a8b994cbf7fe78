# ----------------------------
# Error taxonomy
# ----------------------------
class LifegateError(Exception):
    """Base class for everything the service raises on purpose."""


class ConfigError(LifegateError):
    """A required environment variable is missing."""


class SignatureInvalid(LifegateError):
    """Webhook body does not match the provider signature."""


class CampaignMissing(LifegateError):
    pass


class TransactionConflict(LifegateError):
    """The store aborted the ledger transaction; safe to retry."""


class DeliveryFailed(LifegateError):
    pass


class NotFound(LifegateError):
    pass


class Forbidden(LifegateError):
    pass
