"""
Module containing the ACME Renewal Information (draft-ietf-acme-ari) gateway

RenewalInfoGateway wraps the ACME client and never raises on ARI lookup
failures: callers get a RenewalInfoResult and decide what to do with it.
"""
import logging
from enum import Enum

from acme_renewer.acme_requests import (ACMEError,
                                        ACMERenewalInfoNotSupportedError)
from acme_renewer.cert_id import DEFAULT_HASH_NAME, CertIDError, make_cert_id
from acme_renewer.errors import ConfigurationError

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ARIUpdateError(Exception):
    """Unable to notify the ACME server about the replacement of a certificate"""


class RenewalInfoStatus(Enum):
    """Possible outcomes of a renewal info lookup"""
    WINDOW_FOUND = 1
    NOT_SUPPORTED = 2  # the ACME server doesn't offer ARI
    ERROR = 3          # network, parsing, server error...


class RenewalInfoResult:
    """Tagged result of RenewalInfoGateway.get_renewal_info()"""
    def __init__(self, status, renewal_info=None, detail=None):
        self.status = status
        self.renewal_info = renewal_info
        self.detail = detail

    @classmethod
    def window_found(cls, renewal_info):
        return cls(RenewalInfoStatus.WINDOW_FOUND, renewal_info=renewal_info)

    @classmethod
    def not_supported(cls, detail=None):
        return cls(RenewalInfoStatus.NOT_SUPPORTED, detail=detail)

    @classmethod
    def error(cls, detail):
        return cls(RenewalInfoStatus.ERROR, detail=detail)

    def __repr__(self):
        return f'RenewalInfoResult({self.status}, renewal_info={self.renewal_info!r}, detail={self.detail!r})'


def _check_leaf(leaf):
    if leaf.is_ca:
        raise ConfigurationError('Certificate bundle starts with a CA certificate')


class RenewalInfoGateway:
    """Fetches and updates renewal information through an ACME client"""
    def __init__(self, acme_client):
        self.acme_client = acme_client

    def get_renewal_info(self, leaf, issuer, hash_name=DEFAULT_HASH_NAME):
        """
        Returns a RenewalInfoResult for the leaf certificate (acme_renewer.x509.Certificate).
        Raises ConfigurationError if leaf is a CA certificate
        """
        _check_leaf(leaf)
        try:
            cert_id = make_cert_id(leaf, issuer, hash_name)
        except CertIDError as cert_id_error:
            return RenewalInfoResult.error(f'unable to compute CertID: {cert_id_error}')

        try:
            renewal_info = self.acme_client.get_renewal_info(cert_id, hash_name)
        except ACMERenewalInfoNotSupportedError as not_supported_error:
            return RenewalInfoResult.not_supported(str(not_supported_error))
        except ACMEError as ari_error:
            detail = str(ari_error)
            if ari_error.__cause__ is not None:
                detail = f'{detail}: {ari_error.__cause__}'
            return RenewalInfoResult.error(detail)

        logger.debug("Renewal info for %s: %s", cert_id, renewal_info)
        return RenewalInfoResult.window_found(renewal_info)

    def update_renewal_info(self, leaf, issuer, hash_name=DEFAULT_HASH_NAME):
        """
        Notifies the ACME server that leaf has been replaced.
        Raises ConfigurationError if leaf is a CA certificate and ARIUpdateError on any other failure
        """
        _check_leaf(leaf)
        try:
            cert_id = make_cert_id(leaf, issuer, hash_name)
            self.acme_client.update_renewal_info(cert_id, hash_name)
        except (CertIDError, ACMEError) as update_error:
            raise ARIUpdateError(str(update_error)) from update_error
