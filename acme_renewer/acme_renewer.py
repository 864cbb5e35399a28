# ACME certificates renewal tool

# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.

# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
This module wires the renewal engine together and provides the acme-renewer command line.
The certificate stored for the requested domains (or CSR) gets renewed when the ACME server
renewal information (ARI) or its expiration date says so.
"""
import argparse
import copy
import datetime
import logging
import logging.config
import re
import sys

from acme_renewer.acme_requests import (ACMEAccount, ACMEError, ACMERequests,
                                        CommandChallengeSolver)
from acme_renewer.cert_id import HASH_ALGORITHMS
from acme_renewer.config import DEFAULT_CONFIG_PATH, ConfigError, RenewerConfig
from acme_renewer.errors import FatalInputError, FatalIssuanceError, RenewalError
from acme_renewer.hooks import HookError, HookRunner
from acme_renewer.renewal import (CSRTarget, DomainsTarget, RenewalOptions,
                                  RenewalOutcome, Renewer)
from acme_renewer.storage import CertificatesStorage
from acme_renewer.x509 import SigningRequest, X509Error

VERSION = '0.1'

EXIT_OK = 0
EXIT_FAILURE = 1

GO_DURATION_UNITS = {
    'h': datetime.timedelta(hours=1),
    'm': datetime.timedelta(minutes=1),
    's': datetime.timedelta(seconds=1),
    'ms': datetime.timedelta(milliseconds=1),
    'us': datetime.timedelta(microseconds=1),
    'µs': datetime.timedelta(microseconds=1),
}
GO_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(h|ms|us|µs|m|s)')

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

LOGGING_CONFIG = {
    'disable_existing_loggers': False,
    'version': 1,
    'formatters': {
        'default': {
            'format': '%(asctime)s [%(levelname)s] %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',  # logging handler that outputs log messages to terminal
            'level': 'INFO',                   # message level to be written to console
            'formatter': 'default',
        },
    },
    'loggers': {
        'acme_renewer': {
            'handlers': ['console'],
            'level': 'INFO',
        },
    }
}


def parse_duration(value):
    """
    Parses a duration expressed either in seconds ("90") or the Go way ("1h30m", "45s").
    Returns a timedelta
    """
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise argparse.ArgumentTypeError(f'invalid duration: {value}')
        return datetime.timedelta(seconds=seconds)

    if not value or GO_DURATION_PART.sub('', value):
        raise argparse.ArgumentTypeError(f'invalid duration: {value}')

    duration = datetime.timedelta(0)
    for amount, unit in GO_DURATION_PART.findall(value):
        duration += float(amount) * GO_DURATION_UNITS[unit]

    return duration


class ACMERenewer:
    """Builds the renewal collaborators out of the configuration and runs renewals"""
    def __init__(self, config, debug=False):
        self._configure_logging(debug)
        self.config = config

    @staticmethod
    def _configure_logging(debug=False):
        """Configure logging"""
        logging_config = copy.deepcopy(LOGGING_CONFIG)
        if debug:
            logging_config['handlers']['console']['level'] = 'DEBUG'
            logging_config['loggers']['acme_renewer']['level'] = 'DEBUG'
        logging.config.dictConfig(logging_config)

    def _get_acme_requests(self):
        try:
            account = ACMEAccount.load(self.config.account_id, base_path=self.config.accounts_path,
                                       directory_url=self.config.directory_url)
        except ACMEError as account_error:
            raise FatalInputError(f'Unable to load ACME account {self.config.account_id}') from account_error

        challenge_solver = None
        if self.config.challenge_command:
            challenge_solver = CommandChallengeSolver(self.config.challenge_command,
                                                      timeout=self.config.challenge_timeout)

        try:
            acme_requests = ACMERequests(account, challenge_solver=challenge_solver)
        except ACMEError as acme_error:
            raise FatalIssuanceError(f'Unable to set up the ACME client: {acme_error}') from acme_error

        return acme_requests, account.email

    @staticmethod
    def _get_target(domains=None, csr_path=None):
        if csr_path:
            try:
                csr = SigningRequest.load(csr_path)
            except (OSError, X509Error) as csr_error:
                raise FatalInputError(f'Unable to load CSR {csr_path}') from csr_error
            return CSRTarget(csr)

        return DomainsTarget(domains)

    def get_renewal_options(self, args=None):
        """Returns the RenewalOptions built from the configuration, overridden by the command line args"""
        options = RenewalOptions(
            days=self.config.days,
            ari_enable=self.config.ari_enable,
            ari_hash_name=self.config.ari_hash_name,
            ari_wait_to_renew_duration=self.config.ari_wait_to_renew_duration,
            renew_hook=self.config.hook,
            jitter=self.config.jitter,
        )
        if args is None:
            return options

        if args.days is not None:
            options.days = args.days
        if args.ari_enable:
            options.ari_enable = True
        if args.ari_hash_name is not None:
            options.ari_hash_name = args.ari_hash_name
        if args.ari_wait_to_renew_duration is not None:
            options.ari_wait_to_renew_duration = args.ari_wait_to_renew_duration
        if args.renew_hook is not None:
            options.renew_hook = args.renew_hook
        if args.preferred_chain is not None:
            options.preferred_chain = args.preferred_chain
        options.reuse_key = args.reuse_key
        options.bundle = not args.no_bundle
        options.must_staple = args.must_staple
        options.always_deactivate_authorizations = args.always_deactivate_authorizations
        options.no_random_sleep = args.no_random_sleep

        return options

    def renew(self, options, domains=None, csr_path=None):
        """Renews the certificate of the specified domains or CSR. Returns a RenewalOutcome"""
        target = self._get_target(domains=domains, csr_path=csr_path)
        acme_requests, account_email = self._get_acme_requests()
        storage = CertificatesStorage(self.config.certificates_path, pem=self.config.pem, pfx=self.config.pfx,
                                      pfx_password=self.config.pfx_password)
        renewer = Renewer(acme_requests, storage, account_email=account_email,
                          hook_runner=HookRunner(timeout=self.config.hook_timeout))
        return renewer.renew(target, options)


def get_parser():
    """Returns the command line parser"""
    parser = argparse.ArgumentParser(description="""Renews a certificate previously obtained from an ACME
    server. The renewal is performed when the ACME server renewal information (ARI) suggests it or when
    the certificate expires in less than the configured number of days.""")
    parser.add_argument('--version', action='version', version=VERSION)
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help='configuration file (default: %(default)s)')
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('-d', '--domains', action='append', metavar='DOMAIN',
                        help='domain of the certificate to renew. The first one names the stored certificate, '
                             'it can be specified several times')
    target.add_argument('-c', '--csr', metavar='PATH', help='CSR (PEM or DER) to renew the certificate with')
    parser.add_argument('--days', type=int,
                        help='number of days left on a certificate to renew it, a negative value disables '
                             'the expiration based renewal')
    parser.add_argument('--ari-enable', action='store_true',
                        help='use the renewalInfo endpoint (draft-ietf-acme-ari) to check for renewal')
    parser.add_argument('--ari-hash-name', choices=sorted(HASH_ALGORITHMS),
                        help='hash algorithm used to compute the ARI certificate identifier')
    parser.add_argument('--ari-wait-to-renew-duration', type=parse_duration, metavar='DURATION',
                        help='maximum time to wait for the ARI suggested renewal time (seconds or 1h30m)')
    parser.add_argument('--reuse-key', action='store_true', help='reuse the private key of the stored certificate')
    parser.add_argument('--no-bundle', action='store_true', help='do not bundle the issuer chain')
    parser.add_argument('--must-staple', action='store_true',
                        help='include the OCSP must staple TLS extension in the CSR')
    parser.add_argument('--renew-hook', help='command executed after a successful renewal')
    parser.add_argument('--preferred-chain', help='common name of the preferred chain root certificate issuer')
    parser.add_argument('--always-deactivate-authorizations', action='store_true',
                        help='deactivate the authorizations after obtaining the certificate')
    parser.add_argument('--no-random-sleep', action='store_true',
                        help='do not add a random delay before renewing in non interactive sessions')
    parser.add_argument('--debug', action='store_true', help='enable debug logging')
    return parser


def main(argv=None):
    """
    Main entry point.
    """
    parser = get_parser()
    args = parser.parse_args(argv)

    try:
        config = RenewerConfig.load(args.config)
    except ConfigError as config_error:
        ACMERenewer._configure_logging(args.debug)  # pylint: disable=protected-access
        logger.error("Unable to load configuration: %s", config_error)
        return EXIT_FAILURE

    renewer = ACMERenewer(config, debug=args.debug)
    options = renewer.get_renewal_options(args)

    try:
        outcome = renewer.renew(options, domains=args.domains, csr_path=args.csr)
    except (RenewalError, HookError) as renewal_error:
        logger.error("Renewal failed: %s", renewal_error)
        logger.debug("Renewal failure details", exc_info=True)
        return EXIT_FAILURE

    if outcome is RenewalOutcome.RENEWED:
        logger.info("Certificate renewed")
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
