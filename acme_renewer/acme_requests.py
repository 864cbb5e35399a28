"""
Module containing ACMEv2 client classes
"""
import abc
import logging
import os
import shlex
import subprocess
from datetime import datetime, timedelta
from enum import Enum

import josepy as jose
import requests
from acme import client, errors, messages

from acme_renewer.renewal_window import RenewalInfo, RenewalWindow
from acme_renewer.x509 import (Certificate, CertificateSigningRequest,
                               ECPrivateKey, PrivateKeyLoader, RSAPrivateKey,
                               X509Error)

BASEPATH = '/etc/acme-renewer/accounts'
DIRECTORY_URL = 'https://acme-v02.api.letsencrypt.org/directory'
TLS_VERIFY = True   # intended to be used during testing
USER_AGENT = 'acme-renewer'
DEFAULT_ORDER_TIMEOUT = timedelta(seconds=90)
DEFAULT_CHALLENGE_CMD_TIMEOUT = 60.0
CHALLENGE_ENV_PREFIX = 'ACME_RENEWER_CHALLENGE_'

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ACMEError(Exception):
    """Base error class"""


class ACMEInvalidChallengeError(ACMEError):
    """Challenge(s) have been marked as INVALID"""


class ACMEChallengeNotValidatedError(ACMEError):
    """Challenge(s) have not been validated yet by the ACME Directory"""


class ACMEIssuedCertificateError(ACMEError):
    """Error handling the recently issued certificate"""


class ACMETransportError(ACMEError):
    """Error related to ACME transport protocol (HTTPS)"""


class ACMERenewalInfoError(ACMEError):
    """Error fetching or updating the renewal information of a certificate"""


class ACMERenewalInfoNotSupportedError(ACMERenewalInfoError):
    """The ACME directory doesn't provide a renewalInfo endpoint"""


class ACMEAccountFiles(Enum):
    """Files needed to persist an account"""
    KEY = 'private_key.pem'
    REGR = 'regr.json'


class ACMEChallengeType(Enum):
    """ACMEv2 challenge types"""
    DNS01 = 'dns-01'
    HTTP01 = 'http-01'


class BaseACMEChallenge(abc.ABC):
    """Base ACME challenges class"""
    def __init__(self, challenge_type, identifier, validation):
        self.challenge_type = challenge_type
        self.identifier = identifier
        self.validation = validation

    @property
    @abc.abstractmethod
    def environment(self):
        """Environment variables describing the challenge to an external solver"""

    def _base_environment(self):
        return {
            f'{CHALLENGE_ENV_PREFIX}TYPE': self.challenge_type.value,
            f'{CHALLENGE_ENV_PREFIX}DOMAIN': self.identifier,
            f'{CHALLENGE_ENV_PREFIX}VALIDATION': self.validation,
        }

    def __str__(self):
        return "Challenge type: {}".format(self.challenge_type)


class DNS01ACMEChallenge(BaseACMEChallenge):
    """Class representing dns-01 challenge"""
    def __init__(self, identifier, validation_domain_name, validation):
        super().__init__(ACMEChallengeType.DNS01, identifier, validation)
        self.validation_domain_name = validation_domain_name

    @property
    def environment(self):
        env = self._base_environment()
        env[f'{CHALLENGE_ENV_PREFIX}RECORD'] = self.validation_domain_name
        return env

    def __str__(self):
        return '{}. {} TXT {}'.format(super().__str__(), self.validation_domain_name, self.validation)


class HTTP01ACMEChallenge(BaseACMEChallenge):
    """Class representing http-01 challenge"""
    def __init__(self, identifier, path, validation):
        super().__init__(ACMEChallengeType.HTTP01, identifier, validation)
        self.path = path
        self.file_name = path.split('/')[-1]

    @property
    def environment(self):
        env = self._base_environment()
        env[f'{CHALLENGE_ENV_PREFIX}PATH'] = self.path
        env[f'{CHALLENGE_ENV_PREFIX}TOKEN'] = self.file_name
        return env

    def __str__(self):
        return '{}. http://{}{}: {}'.format(super().__str__(), self.identifier, self.path, self.validation)


class ChallengeSolver(abc.ABC):
    """
    Challenge solvers make the ACME server able to validate the challenges.
    Subclasses are required to implement perform() and cleanup()
    """
    challenge_types = (ACMEChallengeType.HTTP01, ACMEChallengeType.DNS01)

    @abc.abstractmethod
    def perform(self, challenges):
        """Deploys the challenges, raises ACMEError on failure"""

    @abc.abstractmethod
    def cleanup(self, challenges):
        """Removes the deployed challenges"""


class CommandChallengeSolver(ChallengeSolver):
    """
    Delegates challenges to an external command. The command is invoked once per challenge
    with 'perform' or 'cleanup' as last argument and the challenge details in the environment
    """
    def __init__(self, command, timeout=DEFAULT_CHALLENGE_CMD_TIMEOUT, challenge_types=None):
        self.command = shlex.split(command)
        self.timeout = timeout
        if challenge_types is not None:
            self.challenge_types = tuple(challenge_types)

    def _run(self, action, challenge):
        cmd = self.command + [action]
        env = dict(os.environ)
        env.update(challenge.environment)
        logger.info("Running subprocess %s for %s", cmd, challenge)
        subprocess.check_call(cmd,
                              env=env,
                              stdout=subprocess.DEVNULL,
                              stderr=subprocess.DEVNULL,
                              timeout=self.timeout)

    def perform(self, challenges):
        for challenge in challenges:
            try:
                self._run('perform', challenge)
            except subprocess.CalledProcessError as cpe:
                raise ACMEError(f'Unexpected return code spawning challenge solver: {cpe.returncode}') from cpe
            except subprocess.TimeoutExpired as timeout_error:
                raise ACMEError(f'Unable to perform challenge in {self.timeout} seconds') from timeout_error
            except OSError as os_error:
                raise ACMEError('Unable to spawn challenge solver') from os_error

    def cleanup(self, challenges):
        for challenge in challenges:
            try:
                self._run('cleanup', challenge)
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
                logger.exception("Unable to clean up challenge %s", challenge)


class RenewalInfoUpdate(jose.JSONObjectWithFields):
    """Body of the request notifying the replacement of a certificate"""
    cert_id: str = jose.field('certID')
    replaced: bool = jose.field('replaced')


def find_preferred_chain(fullchains_pem, preferred_chain):
    """
    Returns the first full chain whose top-most certificate has been issued by a CA
    with the preferred_chain common name. Defaults to the first full chain
    """
    if preferred_chain:
        for fullchain_pem in fullchains_pem:
            try:
                certificate = Certificate(fullchain_pem.encode('utf-8'))
            except X509Error:
                logger.warning("Ignoring unparseable alternative chain")
                continue
            if certificate.chain[-1].issuer_common_name == preferred_chain:
                return fullchain_pem
        logger.info("Preferred chain %s not found, using the default one", preferred_chain)

    return fullchains_pem[0]


class CertificateResource:
    """Certificate issued by the ACME directory"""
    def __init__(self, *, domain, certificate, cert_url=None, private_key=None, bundle=True):
        self.domain = domain
        self.certificate = certificate
        self.cert_url = cert_url
        self.private_key = private_key
        self.bundle = bundle

    @property
    def issuer_chain(self):
        """Certificates of the chain after the leaf"""
        return self.certificate.chain[1:]


class ACMEClient(client.ClientV2):
    """Subclass of client.ClientV2 that adds ACME Renewal Information support (draft-ietf-acme-ari)"""
    def _renewal_info_url(self):
        try:
            return self.directory['renewalInfo']
        except KeyError:
            raise ACMERenewalInfoNotSupportedError('ACME directory does not provide a renewalInfo endpoint') from None

    def get_renewal_info(self, cert_id, hash_name=None):
        """Fetches the suggested renewal window for the certificate identified by cert_id"""
        url = '{}/{}'.format(self._renewal_info_url().rstrip('/'), cert_id)
        logger.debug("Fetching renewal info from %s (hash: %s)", url, hash_name)
        try:
            response = self.net.get(url)
        except errors.Error as ari_error:
            raise ACMERenewalInfoError('Unable to fetch renewal info') from ari_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to fetch renewal info') from request_error

        try:
            body = response.json()
            renewal_info = messages.RenewalInfo.from_json(body)
        except (jose.DeserializationError, KeyError, TypeError, ValueError) as parse_error:
            raise ACMERenewalInfoError('Received invalid renewal info') from parse_error

        window = renewal_info.suggested_window
        explanation_url = body.get('explanationURL', body.get('explanationUrl'))
        return RenewalInfo(RenewalWindow(window.start, window.end), explanation_url=explanation_url)

    def update_renewal_info(self, cert_id, hash_name=None):
        """Notifies the ACME directory that the certificate identified by cert_id has been replaced"""
        url = self._renewal_info_url()
        logger.debug("Posting replaced certificate %s to %s (hash: %s)", cert_id, url, hash_name)
        try:
            self._post(url, RenewalInfoUpdate(cert_id=cert_id, replaced=True))
        except errors.Error as ari_error:
            raise ACMERenewalInfoError('Unable to update renewal info') from ari_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to update renewal info') from request_error


class ACMEAccount:
    """"ACMEv2 account management
    heavily based on https://github.com/certbot/certbot/blob/master/certbot/account.py
    """
    def __init__(self, *, account_id, key, regr, base_path=BASEPATH, directory_url=DIRECTORY_URL):
        self.account_id = account_id
        self.base_path = base_path
        self.directory_url = directory_url
        self.key = key
        self.regr = regr

    @staticmethod
    def _get_acme_client(jkey, alg, regr=None, directory_url=DIRECTORY_URL):
        net = client.ClientNetwork(key=jkey, account=regr, alg=alg, verify_ssl=TLS_VERIFY, user_agent=USER_AGENT)
        try:
            directory = messages.Directory.from_json(net.get(directory_url).json())
        except (errors.Error, ValueError) as dir_error:
            raise ACMEError('Unable to fetch directory URLs') from dir_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to fetch directory URLs') from request_error

        return ACMEClient(directory, net)

    @staticmethod
    def _get_paths(account_id, base_path=BASEPATH):
        directory_name = os.path.join(base_path, account_id)
        return {account_file: os.path.join(directory_name, account_file.value) for account_file in ACMEAccountFiles}

    @property
    def client(self):
        """Return an ACMEClient for the current ACMEAccount"""
        if isinstance(self.key, ECPrivateKey):
            alg = jose.ES256
        else:
            alg = jose.RS256
        return self._get_acme_client(self.jkey, alg, self.regr, directory_url=self.directory_url)

    @property
    def jkey(self):
        """Return a JOSE JWK instance of the account key"""
        if isinstance(self.key, ECPrivateKey):
            return jose.JWKEC(key=self.key.key)
        return jose.JWKRSA(key=self.key.key)

    @property
    def email(self):
        """First mailto: contact of the account, empty string if none"""
        if self.regr is None:
            return ''
        for contact in self.regr.body.contact or ():
            if contact.startswith('mailto:'):
                return contact[len('mailto:'):]
        return ''

    @classmethod
    def load(cls, account_id, base_path=BASEPATH, directory_url=DIRECTORY_URL):
        """Load the account with the specified account_id from disk"""
        logger.debug("Loading ACME account %s from directory: %s", account_id, directory_url)
        paths = ACMEAccount._get_paths(account_id, base_path=base_path)

        try:
            key = PrivateKeyLoader.load(paths[ACMEAccountFiles.KEY])
            with open(paths[ACMEAccountFiles.REGR], 'r') as regr_file:
                regr = messages.RegistrationResource.json_loads(regr_file.read())
        except (OSError, X509Error, jose.DeserializationError) as load_error:
            raise ACMEError(f'Unable to load ACME account {account_id}') from load_error

        return ACMEAccount(account_id=account_id, key=key, regr=regr, base_path=base_path,
                           directory_url=directory_url)


class ACMERequests:
    """ACMERequests provides high level methods for the following operations:
        - Obtain a certificate for a list of domains
        - Obtain a certificate for an already existing CSR
        - Fetch and update the renewal information of a certificate
    """
    def __init__(self, acme_account, challenge_solver=None, acme_client=None):
        self.acme_account = acme_account
        self.challenge_solver = challenge_solver
        if acme_client is None:
            acme_client = acme_account.client
        self.acme_client = acme_client

        if not self._account_is_valid():
            raise ACMEError('ACME account marked as not valid')

    def _account_is_valid(self):
        try:
            regr = self.acme_client.query_registration(self.acme_account.regr)
        except errors.Error as update_error:
            raise ACMEError('Unable to verify ACME account status') from update_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to verify ACME account status') from request_error

        return regr.body.status == 'valid'

    def _get_challenges(self, authorizations):
        """Returns a list of (challenge body, ACMEChallenge) tuples to be answered.
        One challenge is picked per authorization following the solver preferences
        """
        challenges = []
        for auth in authorizations:
            identifier = auth.body.identifier.value
            available = {challenge.typ: challenge for challenge in auth.body.challenges}
            for challenge_type in self.challenge_solver.challenge_types:
                challenge = available.get(challenge_type.value)
                if challenge is None:
                    continue
                if challenge_type is ACMEChallengeType.DNS01:
                    challenges.append((challenge, DNS01ACMEChallenge(
                        identifier=identifier,
                        validation_domain_name=challenge.validation_domain_name(identifier),
                        validation=challenge.validation(self.acme_account.jkey),
                    )))
                else:
                    challenges.append((challenge, HTTP01ACMEChallenge(
                        identifier=identifier,
                        path=challenge.path,
                        validation=challenge.validation(self.acme_account.jkey),
                    )))
                break
            else:
                raise ACMEError(f'No supported challenge offered for {identifier}')

        return challenges

    def _validate_authorizations(self, orderr):
        pending = [auth for auth in orderr.authorizations if auth.body.status == messages.STATUS_PENDING]
        if not pending:
            return orderr

        if self.challenge_solver is None:
            raise ACMEError('Pending authorizations found and no challenge solver has been configured')

        challenges = self._get_challenges(pending)
        acme_challenges = [acme_challenge for _, acme_challenge in challenges]
        self.challenge_solver.perform(acme_challenges)
        try:
            for challenge, _ in challenges:
                self.acme_client.answer_challenge(challenge, challenge.response(self.acme_account.jkey))
            # using now() instead of utcnow() cause acme_client uses now()
            return self.acme_client.poll_authorizations(orderr, datetime.now() + DEFAULT_ORDER_TIMEOUT)
        except errors.TimeoutError:
            raise ACMEChallengeNotValidatedError('ACME directory has not been able to validate the challenge(s) yet')
        except errors.ValidationError as validation_error:
            logger.error("ACME directory has rejected the challenge(s) for order %s", orderr.uri)
            raise ACMEInvalidChallengeError('Unable to get certificate') from validation_error
        except errors.Error as polling_error:
            raise ACMEError('Unable to validate authorizations') from polling_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to validate authorizations') from request_error
        finally:
            self.challenge_solver.cleanup(acme_challenges)

    def _finalize(self, orderr, preferred_chain):
        try:
            finalized_order = self.acme_client.finalize_order(orderr, datetime.now() + DEFAULT_ORDER_TIMEOUT,
                                                              fetch_alternative_chains=bool(preferred_chain))
        except errors.TimeoutError:
            raise ACMEError('Timeout waiting for the ACME directory to finalize the order')
        except errors.Error as finalize_error:
            logger.error("ACME directory has returned a generic finalization error for order %s", orderr.uri)
            raise ACMEError('Unable to get certificate') from finalize_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to finalize order') from request_error

        fullchains = [finalized_order.fullchain_pem] + list(finalized_order.alternative_fullchains_pem or [])
        try:
            certificate = Certificate(find_preferred_chain(fullchains, preferred_chain).encode('utf-8'))
        except X509Error as certificate_error:
            raise ACMEIssuedCertificateError('Received invalid PEM from ACME server') from certificate_error

        return certificate, finalized_order.body.certificate

    def _deactivate_authorizations(self, orderr):
        for auth in orderr.authorizations:
            try:
                self.acme_client.deactivate_authorization(auth)
            except (errors.Error, requests.exceptions.RequestException):
                logger.warning("Unable to deactivate authorization %s", auth.uri)

    def _obtain(self, csr_pem, domain, bundle, preferred_chain, always_deactivate_authorizations):
        logger.info("[%s] acme: Obtaining certificate", domain)
        try:
            orderr = self.acme_client.new_order(csr_pem)
        except errors.Error as order_error:
            raise ACMEError('Unable to push CSR') from order_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to push CSR') from request_error

        issued = False
        try:
            orderr = self._validate_authorizations(orderr)
            certificate, cert_url = self._finalize(orderr, preferred_chain)
            issued = True
        finally:
            if always_deactivate_authorizations or not issued:
                self._deactivate_authorizations(orderr)

        logger.info("[%s] Server responded with a certificate", domain)
        return CertificateResource(domain=domain, certificate=certificate, cert_url=cert_url, bundle=bundle)

    def obtain(self, domains, bundle=True, private_key=None, must_staple=False, preferred_chain='',
               always_deactivate_authorizations=False):
        """
        Obtains a certificate for the specified domains. The first domain is used as common name.
        A new RSA private key is generated if private_key is not provided
        """
        if private_key is None:
            private_key = RSAPrivateKey()
            private_key.generate()

        csr = CertificateSigningRequest(private_key, domains, must_staple=must_staple)
        resource = self._obtain(csr.pem, csr.common_name, bundle, preferred_chain,
                                always_deactivate_authorizations)
        resource.private_key = private_key
        return resource

    def obtain_for_csr(self, csr, bundle=True, preferred_chain='', always_deactivate_authorizations=False):
        """Obtains a certificate for an already existing CSR (acme_renewer.x509.SigningRequest)"""
        domains = csr.domains
        if not domains:
            raise ACMEError('CSR does not contain any domain')
        return self._obtain(csr.pem, csr.common_name or domains[0], bundle, preferred_chain,
                            always_deactivate_authorizations)

    def get_renewal_info(self, cert_id, hash_name=None):
        """See ACMEClient.get_renewal_info()"""
        return self.acme_client.get_renewal_info(cert_id, hash_name)

    def update_renewal_info(self, cert_id, hash_name=None):
        """See ACMEClient.update_renewal_info()"""
        self.acme_client.update_renewal_info(cert_id, hash_name)
