"""
Module containing the renewal orchestrator

Renewer.renew() drives a single renewal:
    1. load the stored certificate chain
    2. ask the ACME server for a renewal window (ARI) and wait till the picked instant
    3. fall back to the expiry based rule
    4. random delay to avoid renewal storms when running unattended
    5. build the request (domains or CSR)
    6. obtain the new certificate
    7. persist it
    8. report the replacement to the ACME server (ARI)
    9. run the renewal hook

Steps 2 and 4 are the only suspension points: _wait_for_renewal_time() and _random_delay().
"""
import logging
import random
import sys
import time
from datetime import datetime, timedelta, timezone
from enum import Enum

import requests

from acme_renewer.acme_requests import ACMEError
from acme_renewer.ari import (ARIUpdateError, RenewalInfoGateway,
                              RenewalInfoStatus)
from acme_renewer.cert_id import DEFAULT_HASH_NAME
from acme_renewer.errors import (ConfigurationError, FatalInputError,
                                 FatalIssuanceError)
from acme_renewer.hooks import HookRunner, is_interactive
from acme_renewer.storage import StorageError
from acme_renewer.x509 import PrivateKeyLoader, X509Error

DEFAULT_RENEWAL_DAYS = 30
# https://github.com/certbot/certbot/blob/284023a1b7672be2bd4018dd7623b3b92197d4b0/certbot/certbot/_internal/renewal.py#L472
DEFAULT_JITTER = timedelta(minutes=8)
ONE_HOUR = timedelta(hours=1)

ENV_ACCOUNT_EMAIL = 'ACME_RENEWER_ACCOUNT_EMAIL'
ENV_CERT_DOMAIN = 'ACME_RENEWER_CERT_DOMAIN'
ENV_CERT_PATH = 'ACME_RENEWER_CERT_PATH'
ENV_CERT_KEY_PATH = 'ACME_RENEWER_CERT_KEY_PATH'
ENV_CERT_PEM_PATH = 'ACME_RENEWER_CERT_PEM_PATH'
ENV_CERT_PFX_PATH = 'ACME_RENEWER_CERT_PFX_PATH'

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class RenewalOutcome(Enum):
    """Result of a renewal attempt that didn't fail"""
    NOT_NEEDED = 1
    RENEWED = 2


class RenewalOptions:  # pylint: disable=too-many-instance-attributes,too-few-public-methods
    """Knobs of a renewal"""
    def __init__(self, *, days=DEFAULT_RENEWAL_DAYS, ari_enable=False, ari_hash_name=DEFAULT_HASH_NAME,
                 ari_wait_to_renew_duration=timedelta(0), reuse_key=False, bundle=True, must_staple=False,
                 preferred_chain='', always_deactivate_authorizations=False, no_random_sleep=False,
                 renew_hook='', jitter=DEFAULT_JITTER):
        self.days = days
        self.ari_enable = ari_enable
        self.ari_hash_name = ari_hash_name
        self.ari_wait_to_renew_duration = ari_wait_to_renew_duration
        self.reuse_key = reuse_key
        self.bundle = bundle
        self.must_staple = must_staple
        self.preferred_chain = preferred_chain
        self.always_deactivate_authorizations = always_deactivate_authorizations
        self.no_random_sleep = no_random_sleep
        self.renew_hook = renew_hook
        self.jitter = jitter


class DomainsTarget:
    """Renewal of the certificate stored for domains[0], merging its domains with the requested ones"""
    def __init__(self, domains):
        if not domains:
            raise FatalInputError('At least one domain is required')
        self.domains = list(domains)

    @property
    def domain(self):
        return self.domains[0]


class CSRTarget:
    """Renewal using an existing CSR (acme_renewer.x509.SigningRequest)"""
    def __init__(self, csr):
        self.csr = csr

    @property
    def domain(self):
        try:
            common_name = self.csr.common_name
        except X509Error as cn_error:
            raise FatalInputError('Unable to get the CSR common name') from cn_error
        if not common_name:
            raise FatalInputError('CSR does not provide a subject common name')
        return common_name


def merge_domains(previous, requested):
    """Returns previous followed by the requested domains not already present in it"""
    merged = list(previous)
    for domain in requested:
        if domain not in merged:
            merged.append(domain)
    return merged


def utcnow():
    return datetime.now(timezone.utc)


class Renewer:  # pylint: disable=too-many-instance-attributes
    """Renewal orchestrator"""
    def __init__(self, acme_client, storage, *, account_email='', ari_gateway=None, hook_runner=None,
                 terminal_detector=is_interactive, rng=None, sleep=time.sleep, clock=utcnow):
        self.acme_client = acme_client
        self.storage = storage
        self.account_email = account_email
        if ari_gateway is None:
            ari_gateway = RenewalInfoGateway(acme_client)
        self.ari_gateway = ari_gateway
        if hook_runner is None:
            hook_runner = HookRunner()
        self.hook_runner = hook_runner
        self.terminal_detector = terminal_detector
        if rng is None:
            rng = random.Random()
        self.rng = rng
        self.sleep = sleep
        self.clock = clock

    def _load(self, domain):
        try:
            certificates = self.storage.read_certificate_chain(domain, '.crt')
        except (StorageError, OSError) as load_error:
            raise FatalInputError(f'Error while loading the certificate for domain {domain}') from load_error

        if not certificates:
            raise FatalInputError(f'No certificate found for domain {domain}')

        return certificates

    def _get_ari_renewal_time(self, leaf, issuer, domain, options):
        result = self.ari_gateway.get_renewal_info(leaf, issuer, options.ari_hash_name)
        if result.status is RenewalInfoStatus.NOT_SUPPORTED:
            logger.warning("[%s] acme: %s", domain, result.detail)
            return None
        if result.status is RenewalInfoStatus.ERROR:
            logger.warning("[%s] acme: calling renewal info endpoint: %s", domain, result.detail)
            return None

        renewal_info = result.renewal_info
        renewal_time = renewal_info.should_renew_at(self.clock(), options.ari_wait_to_renew_duration, rng=self.rng)
        if renewal_time is None:
            logger.info("[%s] acme: renewalInfo endpoint indicates that renewal is not needed", domain)
            return None
        logger.info("[%s] acme: renewalInfo endpoint indicates that renewal is needed", domain)

        if renewal_info.explanation_url:
            logger.info("[%s] acme: renewalInfo endpoint provided an explanation: %s",
                        domain, renewal_info.explanation_url)

        return renewal_time

    def _wait_for_renewal_time(self, domain, renewal_time):
        """Suspension point: blocks till the renewal time picked within the ARI window"""
        now = self.clock()
        if renewal_time > now:
            logger.info("[%s] Sleeping %s until renewal time %s", domain, renewal_time - now, renewal_time)
            self.sleep((renewal_time - now).total_seconds())

    def _needs_renewal(self, leaf, domain, days):
        if leaf.is_ca:
            raise ConfigurationError(f'[{domain}] Certificate bundle starts with a CA certificate')

        if days >= 0:
            days_left = leaf.days_left(self.clock())
            if days_left > days:
                logger.info("[%s] The certificate expires in %d days, the number of days defined to perform the "
                            "renewal is %d: no renewal.", domain, days_left, days)
                return False

        return True

    def _random_delay(self, options):
        """
        Suspension point: non interactive renewals are delayed a random amount of time
        to spread the load on the ACME servers
        """
        # https://github.com/certbot/certbot/blob/284023a1b7672be2bd4018dd7623b3b92197d4b0/certbot/certbot/_internal/renewal.py#L435-L440
        if options.no_random_sleep or self.terminal_detector(sys.stdout):
            return

        ceiling = options.jitter.total_seconds()
        if ceiling <= 0:
            return

        delay = self.rng.random() * ceiling
        logger.info("renewal: random delay of %s", timedelta(seconds=delay))
        self.sleep(delay)

    def _load_private_key(self, domain):
        try:
            key_material = self.storage.read_key_material(domain, '.key')
        except (StorageError, OSError) as read_error:
            raise FatalInputError(f'Error while loading the private key for domain {domain}') from read_error

        try:
            return PrivateKeyLoader.parse(key_material)
        except X509Error as parse_error:
            raise FatalInputError(f'Error while parsing the private key for domain {domain}') from parse_error

    def _obtain(self, target, leaf, options):
        if isinstance(target, CSRTarget):
            obtain = self.acme_client.obtain_for_csr
            kwargs = {
                'csr': target.csr,
                'bundle': options.bundle,
                'preferred_chain': options.preferred_chain,
                'always_deactivate_authorizations': options.always_deactivate_authorizations,
            }
        else:
            private_key = None
            if options.reuse_key:
                private_key = self._load_private_key(target.domain)
            obtain = self.acme_client.obtain
            kwargs = {
                'domains': merge_domains(leaf.domains, target.domains),
                'bundle': options.bundle,
                'private_key': private_key,
                'must_staple': options.must_staple,
                'preferred_chain': options.preferred_chain,
                'always_deactivate_authorizations': options.always_deactivate_authorizations,
            }

        try:
            return obtain(**kwargs)
        except (ACMEError, requests.exceptions.RequestException) as obtain_error:
            raise FatalIssuanceError(f'Unable to obtain a certificate for {target.domain}: {obtain_error}') \
                from obtain_error

    def _persist(self, domain, resource):
        try:
            self.storage.save(resource)
        except (StorageError, OSError) as save_error:
            raise FatalInputError(f'Unable to save the certificate for domain {domain}') from save_error

    def _report_replacement(self, leaf, issuer, domain, options):
        # Post to the renewalInfo endpoint to indicate that the certificate has been renewed and replaced
        try:
            self.ari_gateway.update_renewal_info(leaf, issuer, options.ari_hash_name)
        except ARIUpdateError as update_error:
            logger.warning("[%s] Failed to update renewal info: %s", domain, update_error)

    def _metadata(self, target):
        domain = target.domain
        meta = {
            ENV_ACCOUNT_EMAIL: self.account_email,
            ENV_CERT_DOMAIN: domain,
            ENV_CERT_PATH: self.storage.file_name_for(domain, '.crt'),
            ENV_CERT_KEY_PATH: self.storage.file_name_for(domain, '.key'),
        }
        if not isinstance(target, CSRTarget):
            meta[ENV_CERT_PEM_PATH] = self.storage.file_name_for(domain, '.pem')
            meta[ENV_CERT_PFX_PATH] = self.storage.file_name_for(domain, '.pfx')
        return meta

    def renew(self, target, options):
        """
        Renews the certificate of target (DomainsTarget or CSRTarget) if needed.
        Returns a RenewalOutcome, raises RenewalError subclasses on fatal errors
        """
        domain = target.domain
        certificates = self._load(domain)
        leaf = certificates[0]
        issuer = certificates[1] if len(certificates) > 1 else None

        ari_renewal_time = None
        if options.ari_enable:
            if issuer is None:
                logger.warning("[%s] Certificate bundle does not contain issuer, cannot use the renewalInfo endpoint",
                               domain)
            else:
                ari_renewal_time = self._get_ari_renewal_time(leaf, issuer, domain, options)
            if ari_renewal_time is not None:
                self._wait_for_renewal_time(domain, ari_renewal_time)

        if ari_renewal_time is None and not self._needs_renewal(leaf, domain, options.days):
            return RenewalOutcome.NOT_NEEDED

        time_left = leaf.time_left(self.clock())
        logger.info("[%s] acme: Trying renewal with %d hours remaining", domain, int(time_left / ONE_HOUR))

        self._random_delay(options)

        resource = self._obtain(target, leaf, options)
        self._persist(domain, resource)

        if ari_renewal_time is not None:
            self._report_replacement(leaf, issuer, domain, options)

        if options.renew_hook:
            self.hook_runner.run(options.renew_hook, self._metadata(target))

        return RenewalOutcome.RENEWED
