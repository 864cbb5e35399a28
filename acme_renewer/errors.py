"""
Renewal error taxonomy

Every error here aborts the renewal. Only acme_renewer.main() decides to
terminate the process.
"""


class RenewalError(Exception):
    """Base renewal error"""


class FatalInputError(RenewalError):
    """Missing/contradictory renewal target or unreadable/malformed stored material"""


class FatalIssuanceError(RenewalError):
    """The ACME client was unable to issue the new certificate"""


class ConfigurationError(RenewalError):
    """A CA certificate has been found where an end-entity certificate was expected"""
