"""
Module containing configuration handling classes
"""

import datetime
import logging

import yaml

from acme_renewer.acme_requests import (BASEPATH, DEFAULT_CHALLENGE_CMD_TIMEOUT,
                                        DIRECTORY_URL)
from acme_renewer.cert_id import DEFAULT_HASH_NAME, HASH_ALGORITHMS
from acme_renewer.hooks import DEFAULT_HOOK_TIMEOUT
from acme_renewer.renewal import DEFAULT_JITTER, DEFAULT_RENEWAL_DAYS
from acme_renewer.storage import BASEPATH as CERTIFICATES_BASEPATH

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

# default values that can be customized via the config file
DEFAULT_CONFIG_PATH = '/etc/acme-renewer/config.yaml'
DEFAULT_ARI_WAIT_TO_RENEW_DURATION = 0


class ConfigError(Exception):
    """Invalid configuration"""


def _get_int(section, key, default, minimum=None):
    value = section.get(key, default)
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid %s %s. Using the default one: %s", key, value, default)
        return default

    if minimum is not None and value < minimum:
        logger.warning("Ignoring invalid %s %s. Using the default one: %s", key, value, default)
        return default

    return value


def _get_float(section, key, default):
    value = section.get(key, default)
    try:
        value = float(value)
    except (TypeError, ValueError):
        logger.warning("Missing/invalid %s, using the default one: %.2f", key, default)
        return default

    if value <= 0:
        logger.warning("Missing/invalid %s, using the default one: %.2f", key, default)
        return default

    return value


def _get_section(config, name):
    section = config.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        logger.warning("Ignoring invalid %s section", name)
        return {}
    return section


class RenewerConfig:  # pylint: disable=too-many-instance-attributes
    """Class representing acme-renewer configuration"""
    def __init__(self, *, account_id, directory_url=DIRECTORY_URL, accounts_path=BASEPATH,
                 certificates_path=CERTIFICATES_BASEPATH, days=DEFAULT_RENEWAL_DAYS, ari_enable=False,
                 ari_hash_name=DEFAULT_HASH_NAME,
                 ari_wait_to_renew_duration=datetime.timedelta(seconds=DEFAULT_ARI_WAIT_TO_RENEW_DURATION),
                 jitter=DEFAULT_JITTER, hook='', hook_timeout=DEFAULT_HOOK_TIMEOUT, pem=False, pfx=False,
                 pfx_password='', challenge_command='', challenge_timeout=DEFAULT_CHALLENGE_CMD_TIMEOUT):
        self.account_id = account_id
        self.directory_url = directory_url
        self.accounts_path = accounts_path
        self.certificates_path = certificates_path
        self.days = days
        self.ari_enable = ari_enable
        self.ari_hash_name = ari_hash_name
        self.ari_wait_to_renew_duration = ari_wait_to_renew_duration
        self.jitter = jitter
        self.hook = hook
        self.hook_timeout = hook_timeout
        self.pem = pem
        self.pfx = pfx
        self.pfx_password = pfx_password
        self.challenge_command = challenge_command
        self.challenge_timeout = challenge_timeout

    @staticmethod
    def load(file_name):  # pylint: disable=too-many-locals
        """Load a config from the specified file_name"""
        logger.debug("Loading config file: %s", file_name)
        try:
            with open(file_name, encoding='utf-8') as config_file:
                config = yaml.safe_load(config_file)
        except OSError as read_error:
            raise ConfigError(f'Unable to read config file {file_name}') from read_error
        except yaml.YAMLError as yaml_error:
            raise ConfigError(f'Unable to parse config file {file_name}') from yaml_error

        if not isinstance(config, dict):
            raise ConfigError(f'Config file {file_name} does not contain a mapping')

        return RenewerConfig.from_dict(config)

    @staticmethod
    def from_dict(config):
        """Builds a RenewerConfig from an already parsed configuration"""
        account = config.get('account')
        if not isinstance(account, dict) or not account.get('id'):
            raise ConfigError('Missing account id')

        directory_url = account.get('directory')
        if not directory_url:
            logger.warning("Missing ACME directory, using the default one: %s", DIRECTORY_URL)
            directory_url = DIRECTORY_URL

        paths = _get_section(config, 'paths')
        renewal = _get_section(config, 'renewal')
        storage = _get_section(config, 'storage')
        challenges = _get_section(config, 'challenges')

        ari_hash_name = renewal.get('ari_hash_name', DEFAULT_HASH_NAME)
        if ari_hash_name not in HASH_ALGORITHMS:
            logger.warning("Ignoring unsupported ARI hash %s. Using the default one: %s",
                           ari_hash_name, DEFAULT_HASH_NAME)
            ari_hash_name = DEFAULT_HASH_NAME

        ari_wait_seconds = _get_int(renewal, 'ari_wait_to_renew_duration', DEFAULT_ARI_WAIT_TO_RENEW_DURATION,
                                    minimum=0)
        jitter_seconds = _get_int(renewal, 'jitter', int(DEFAULT_JITTER.total_seconds()), minimum=0)

        return RenewerConfig(
            account_id=str(account['id']),
            directory_url=directory_url,
            accounts_path=paths.get('accounts', BASEPATH),
            certificates_path=paths.get('certificates', CERTIFICATES_BASEPATH),
            days=_get_int(renewal, 'days', DEFAULT_RENEWAL_DAYS),
            ari_enable=bool(renewal.get('ari_enable', False)),
            ari_hash_name=ari_hash_name,
            ari_wait_to_renew_duration=datetime.timedelta(seconds=ari_wait_seconds),
            jitter=datetime.timedelta(seconds=jitter_seconds),
            hook=renewal.get('hook') or '',
            hook_timeout=_get_float(renewal, 'hook_timeout', DEFAULT_HOOK_TIMEOUT),
            pem=bool(storage.get('pem', False)),
            pfx=bool(storage.get('pfx', False)),
            pfx_password=storage.get('pfx_password') or '',
            challenge_command=challenges.get('command') or '',
            challenge_timeout=_get_float(challenges, 'timeout', DEFAULT_CHALLENGE_CMD_TIMEOUT),
        )
