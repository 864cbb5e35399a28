import argparse
import io
import os
import tempfile
import unittest
from datetime import timedelta
from unittest import mock

from acme_renewer.acme_renewer import (EXIT_FAILURE, EXIT_OK, ACMERenewer,
                                       get_parser, main, parse_duration)
from acme_renewer.acme_requests import ACMEError, CommandChallengeSolver
from acme_renewer.config import ConfigError, RenewerConfig
from acme_renewer.errors import (ConfigurationError, FatalInputError,
                                 FatalIssuanceError)
from acme_renewer.hooks import HookError
from acme_renewer.renewal import (DEFAULT_JITTER, CSRTarget, DomainsTarget,
                                  RenewalOptions, RenewalOutcome)
from acme_renewer.x509 import CertificateSigningRequest
from tests.fixtures import generate_key


class ParseDurationTest(unittest.TestCase):
    def test_parse_duration(self):
        test_cases = [
            ('90', timedelta(seconds=90)),
            ('1.5', timedelta(seconds=1.5)),
            ('0', timedelta(0)),
            ('45s', timedelta(seconds=45)),
            ('1h30m', timedelta(hours=1, minutes=30)),
            ('1.5h', timedelta(hours=1, minutes=30)),
            ('300ms', timedelta(milliseconds=300)),
            ('2m10s500ms', timedelta(minutes=2, seconds=10, milliseconds=500)),
        ]
        for value, expected in test_cases:
            self.assertEqual(parse_duration(value), expected, value)

    def test_invalid_duration(self):
        for value in ('', '-1', 'soon', '10x', '1h-30m', 'h'):
            with self.assertRaises(argparse.ArgumentTypeError, msg=value):
                parse_duration(value)


class ParserTest(unittest.TestCase):
    def test_domains(self):
        args = get_parser().parse_args(['-d', 'example.org', '--domains', 'www.example.org'])
        self.assertEqual(args.domains, ['example.org', 'www.example.org'])
        self.assertIsNone(args.csr)
        self.assertIsNone(args.days)
        self.assertFalse(args.ari_enable)
        self.assertFalse(args.no_random_sleep)

    def test_ari_arguments(self):
        args = get_parser().parse_args(['-c', '/etc/ssl/example.org.csr', '--ari-enable',
                                        '--ari-hash-name', 'SHA-384', '--ari-wait-to-renew-duration', '2h'])
        self.assertEqual(args.csr, '/etc/ssl/example.org.csr')
        self.assertTrue(args.ari_enable)
        self.assertEqual(args.ari_hash_name, 'SHA-384')
        self.assertEqual(args.ari_wait_to_renew_duration, timedelta(hours=2))

    @mock.patch('sys.stderr', new_callable=io.StringIO)
    def test_invalid_arguments(self, _):
        test_cases = [
            [],
            ['-d', 'example.org', '-c', '/etc/ssl/example.org.csr'],
            ['-d', 'example.org', '--ari-hash-name', 'MD5'],
            ['-d', 'example.org', '--ari-wait-to-renew-duration', 'forever'],
            ['-d', 'example.org', '--days', 'thirty'],
        ]
        for argv in test_cases:
            with self.assertRaises(SystemExit, msg=argv) as exit_context:
                get_parser().parse_args(argv)
            self.assertEqual(exit_context.exception.code, 2)


@mock.patch.object(ACMERenewer, '_configure_logging')
class ACMERenewerTest(unittest.TestCase):
    def setUp(self):
        self.config = RenewerConfig(account_id='1234', days=15, ari_enable=False, ari_hash_name='SHA-256',
                                    ari_wait_to_renew_duration=timedelta(minutes=5),
                                    hook='/usr/local/bin/reload-nginx', hook_timeout=30.0,
                                    challenge_command='/usr/local/bin/dns-challenge', challenge_timeout=15.0)

    def test_configure_logging(self, configure_logging_mock):
        ACMERenewer(self.config, debug=True)
        configure_logging_mock.assert_called_once_with(True)

    def test_get_renewal_options_from_config(self, _):
        options = ACMERenewer(self.config).get_renewal_options()

        self.assertIsInstance(options, RenewalOptions)
        self.assertEqual(options.days, 15)
        self.assertFalse(options.ari_enable)
        self.assertEqual(options.ari_hash_name, 'SHA-256')
        self.assertEqual(options.ari_wait_to_renew_duration, timedelta(minutes=5))
        self.assertEqual(options.renew_hook, '/usr/local/bin/reload-nginx')
        self.assertEqual(options.jitter, DEFAULT_JITTER)
        self.assertTrue(options.bundle)
        self.assertFalse(options.reuse_key)

    def test_get_renewal_options_overrides(self, _):
        args = get_parser().parse_args(['-d', 'example.org', '--days', '-1', '--ari-enable',
                                        '--ari-hash-name', 'SHA-512', '--ari-wait-to-renew-duration', '1m',
                                        '--renew-hook', '', '--preferred-chain', 'ISRG Root X1', '--reuse-key',
                                        '--no-bundle', '--must-staple', '--always-deactivate-authorizations',
                                        '--no-random-sleep'])
        options = ACMERenewer(self.config).get_renewal_options(args)

        self.assertEqual(options.days, -1)
        self.assertTrue(options.ari_enable)
        self.assertEqual(options.ari_hash_name, 'SHA-512')
        self.assertEqual(options.ari_wait_to_renew_duration, timedelta(minutes=1))
        self.assertEqual(options.renew_hook, '')
        self.assertEqual(options.preferred_chain, 'ISRG Root X1')
        self.assertTrue(options.reuse_key)
        self.assertFalse(options.bundle)
        self.assertTrue(options.must_staple)
        self.assertTrue(options.always_deactivate_authorizations)
        self.assertTrue(options.no_random_sleep)

    def test_get_target(self, _):
        target = ACMERenewer._get_target(domains=['example.org'])  # pylint: disable=protected-access
        self.assertIsInstance(target, DomainsTarget)
        self.assertEqual(target.domain, 'example.org')

        csr = CertificateSigningRequest(generate_key(), ['example.org', 'www.example.org'])
        with tempfile.TemporaryDirectory() as temp_dir:
            csr_path = os.path.join(temp_dir, 'example.org.csr')
            with open(csr_path, 'wb') as csr_file:
                csr_file.write(csr.pem)
            target = ACMERenewer._get_target(csr_path=csr_path)  # pylint: disable=protected-access

        self.assertIsInstance(target, CSRTarget)
        self.assertEqual(target.domain, 'example.org')

    def test_get_target_failures(self, _):
        with tempfile.TemporaryDirectory() as temp_dir:
            garbage_path = os.path.join(temp_dir, 'garbage.csr')
            with open(garbage_path, 'wb') as csr_file:
                csr_file.write(b'garbage')
            for csr_path in (garbage_path, os.path.join(temp_dir, 'missing.csr')):
                with self.assertRaises(FatalInputError, msg=csr_path):
                    ACMERenewer._get_target(csr_path=csr_path)  # pylint: disable=protected-access

        with self.assertRaises(FatalInputError):
            ACMERenewer._get_target(domains=[])  # pylint: disable=protected-access

    @mock.patch('acme_renewer.acme_renewer.ACMERequests')
    @mock.patch('acme_renewer.acme_renewer.ACMEAccount')
    def test_get_acme_requests(self, account_mock, requests_mock, _):
        account_mock.load.return_value.email = 'admin@example.org'

        acme_requests, email = ACMERenewer(self.config)._get_acme_requests()  # pylint: disable=protected-access

        account_mock.load.assert_called_once_with('1234', base_path=self.config.accounts_path,
                                                  directory_url=self.config.directory_url)
        self.assertIs(acme_requests, requests_mock.return_value)
        self.assertEqual(email, 'admin@example.org')
        challenge_solver = requests_mock.call_args[1]['challenge_solver']
        self.assertIsInstance(challenge_solver, CommandChallengeSolver)
        self.assertEqual(challenge_solver.command, ['/usr/local/bin/dns-challenge'])
        self.assertEqual(challenge_solver.timeout, 15.0)

    @mock.patch('acme_renewer.acme_renewer.ACMERequests')
    @mock.patch('acme_renewer.acme_renewer.ACMEAccount')
    def test_get_acme_requests_failures(self, account_mock, requests_mock, _):
        renewer = ACMERenewer(self.config)
        account_mock.load.side_effect = ACMEError('missing account')
        with self.assertRaises(FatalInputError):
            renewer._get_acme_requests()  # pylint: disable=protected-access

        account_mock.load.side_effect = None
        requests_mock.side_effect = ACMEError('account deactivated')
        with self.assertRaises(FatalIssuanceError):
            renewer._get_acme_requests()  # pylint: disable=protected-access

    @mock.patch('acme_renewer.acme_renewer.ACMERequests')
    @mock.patch('acme_renewer.acme_renewer.ACMEAccount')
    def test_get_acme_requests_without_challenge_command(self, _, requests_mock, __):
        self.config.challenge_command = ''
        ACMERenewer(self.config)._get_acme_requests()  # pylint: disable=protected-access
        self.assertIsNone(requests_mock.call_args[1]['challenge_solver'])

    @mock.patch('acme_renewer.acme_renewer.Renewer')
    @mock.patch.object(ACMERenewer, '_get_acme_requests')
    def test_renew(self, get_acme_requests_mock, renewer_mock, _):
        acme_requests = mock.MagicMock()
        get_acme_requests_mock.return_value = (acme_requests, 'admin@example.org')
        renewer_mock.return_value.renew.return_value = RenewalOutcome.RENEWED
        options = RenewalOptions()

        outcome = ACMERenewer(self.config).renew(options, domains=['example.org'])

        self.assertIs(outcome, RenewalOutcome.RENEWED)
        renewer_args, renewer_kwargs = renewer_mock.call_args
        self.assertIs(renewer_args[0], acme_requests)
        self.assertEqual(renewer_args[1].root_path, self.config.certificates_path)
        self.assertEqual(renewer_kwargs['account_email'], 'admin@example.org')
        self.assertEqual(renewer_kwargs['hook_runner'].timeout, 30.0)
        target, renew_options = renewer_mock.return_value.renew.call_args[0]
        self.assertIsInstance(target, DomainsTarget)
        self.assertIs(renew_options, options)


@mock.patch.object(ACMERenewer, '_configure_logging')
class MainTest(unittest.TestCase):
    def setUp(self):
        self.config = RenewerConfig(account_id='1234')
        patcher = mock.patch.object(RenewerConfig, 'load', return_value=self.config)
        self.load_mock = patcher.start()
        self.addCleanup(patcher.stop)

    @mock.patch.object(ACMERenewer, 'renew')
    def test_main(self, renew_mock, _):
        for outcome in (RenewalOutcome.NOT_NEEDED, RenewalOutcome.RENEWED):
            renew_mock.return_value = outcome
            self.assertEqual(main(['--config', '/tmp/config.yaml', '-d', 'example.org', '-d', 'www.example.org',
                                   '--no-random-sleep']), EXIT_OK)

        self.load_mock.assert_called_with('/tmp/config.yaml')
        options = renew_mock.call_args[0][0]
        self.assertTrue(options.no_random_sleep)
        self.assertEqual(renew_mock.call_args[1], {'domains': ['example.org', 'www.example.org'], 'csr_path': None})

    @mock.patch.object(ACMERenewer, 'renew')
    def test_main_failures(self, renew_mock, _):
        for side_effect in (FatalInputError('no certificate'), FatalIssuanceError('rate limited'),
                            ConfigurationError('CA certificate'), HookError('hook failed')):
            renew_mock.side_effect = side_effect
            with self.assertLogs('acme_renewer.acme_renewer', level='ERROR'):
                self.assertEqual(main(['-c', '/etc/ssl/example.org.csr']), EXIT_FAILURE)

    @mock.patch.object(ACMERenewer, 'renew')
    def test_main_config_error(self, renew_mock, configure_logging_mock):
        self.load_mock.side_effect = ConfigError('Unable to read config file')
        with self.assertLogs('acme_renewer.acme_renewer', level='ERROR'):
            self.assertEqual(main(['-d', 'example.org', '--debug']), EXIT_FAILURE)

        configure_logging_mock.assert_called_once_with(True)
        renew_mock.assert_not_called()
