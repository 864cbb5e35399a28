"""
Module containing x509 helper classes
"""
import abc
import os
import stat
from datetime import datetime, timedelta, timezone
from enum import Enum

from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.extensions import ExtensionNotFound
from cryptography.x509.oid import NameOID

DEFAULT_RSA_KEY_SIZE = 2048
DEFAULT_RSA_PUBLIC_EXPONENT = 65537
DEFAULT_SIGNATURE_ALGORITHM = hashes.SHA256()
DEFAULT_EC_CURVE = ec.SECP256R1  # pylint: disable=invalid-name
OPENER_MODE = 0o640
PEM_HEADER = b'-----BEGIN CERTIFICATE-----'
PEM_HEADER_AND_FOOTER_LEN = 52
CSR_PEM_HEADER = b'-----BEGIN CERTIFICATE REQUEST-----'
ONE_DAY = timedelta(days=1)


class X509Error(Exception):
    """Base exception class for the X509 module"""


class CertificateSaveMode(Enum):
    """What Certificate.save() writes"""
    CERT_ONLY = 1
    CHAIN_ONLY = 2
    FULL_CHAIN = 3  # certificate + chain


def secure_opener(path, flags):
    """open() opener creating files with OPENER_MODE permissions"""
    return os.open(path, flags, OPENER_MODE)


def utc(value):
    """Returns value as a timezone aware datetime, naive datetimes are considered UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PrivateKeyLoader():
    """PrivateKey factory that reads an existing key from disk or memory"""
    @staticmethod
    def load(filename):
        """Loads a private key from disk, refusing group writable or world accessible files"""
        key_stat = os.stat(filename)
        if key_stat.st_mode & (stat.S_IWGRP | stat.S_IXGRP | stat.S_IRWXO):
            raise X509Error(f"permissions ({stat.S_IMODE(key_stat.st_mode):o}) are too open for {filename}")

        with open(filename, 'rb') as key_file:
            return PrivateKeyLoader.parse(key_file.read())

    @staticmethod
    def parse(pem):
        """Parses a PEM encoded private key"""
        try:
            private_key = serialization.load_pem_private_key(pem, password=None)
        except (TypeError, ValueError) as load_pem_error:
            raise X509Error('Unable to parse private key PEM') from load_pem_error

        if isinstance(private_key, rsa.RSAPrivateKey):
            return RSAPrivateKey(private_key=private_key)
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return ECPrivateKey(private_key=private_key)
        raise X509Error("Unsupported private key type")


class PrivateKey(abc.ABC):
    """Wrapper around a cryptography private key. Subclasses provide generate(**kwargs)"""
    def __init__(self, private_key=None):
        self.key = private_key

    @abc.abstractmethod
    def generate(self, **kwargs):
        """Generates a new private key"""

    @property
    def private_pem(self):
        """Unencrypted PEM of the private key"""
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def save(self, filename):
        """Persists the private key on disk"""
        with open(filename, 'wb', opener=secure_opener) as key_file:
            key_file.write(self.private_pem)


class RSAPrivateKey(PrivateKey):
    """RSA Private Key implementation"""
    def generate(self, **kwargs):
        """
        Generates a new RSA private key
        Supported parameters:
            - size <int> default value: DEFAULT_RSA_KEY_SIZE
        """
        size = kwargs.get('size', DEFAULT_RSA_KEY_SIZE)

        self.key = rsa.generate_private_key(
            public_exponent=DEFAULT_RSA_PUBLIC_EXPONENT,
            key_size=size,
        )


class ECPrivateKey(PrivateKey):
    """Elliptic Curve Private Key implementation"""
    def generate(self, **kwargs):
        """
        Generates a new elliptic curve private key
        Supported parameters
            - curve <instance of cryptography.hazmat.primitives.asymmetric.ec.EllipticCurve>
              default value: DEFAULT_EC_CURVE
        """
        curve = kwargs.get('curve', DEFAULT_EC_CURVE)

        self.key = ec.generate_private_key(curve=curve())


def _dns_names(extensions):
    try:
        san_ext = extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
    except ExtensionNotFound:  # no SANs
        return []
    return san_ext.value.get_values_for_type(crypto_x509.DNSName)


def _common_name(name):
    name_attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not name_attrs:
        return None
    if len(name_attrs) > 1:
        raise X509Error('Unexpected number of common name attributes')

    return name_attrs[0].value


def _unique(names):
    ret = []
    for name in names:
        if name not in ret:
            ret.append(name)
    return ret


class CertificateSigningRequest():
    """
    Certificate Signing Request (CSR) generator. The first domain is used as
    common name and every domain is added as a DNS SubjectAlternativeName
    """
    def __init__(self, private_key, domains, must_staple=False):
        if not isinstance(private_key, PrivateKey):
            raise TypeError("private_key must be either a RSAPrivateKey or ECPrivateKey instance")
        if not isinstance(domains, (list, tuple)) or not domains:
            raise TypeError("domains must be a non empty tuple or list")

        self.private_key = private_key
        self.domains = list(domains)
        self.common_name = self.domains[0]

        builder = crypto_x509.CertificateSigningRequestBuilder().subject_name(crypto_x509.Name([
            crypto_x509.NameAttribute(NameOID.COMMON_NAME, self.common_name),
        ]))
        builder = builder.add_extension(
            crypto_x509.SubjectAlternativeName([crypto_x509.DNSName(domain) for domain in self.domains]),
            critical=False)
        if must_staple:
            builder = builder.add_extension(crypto_x509.TLSFeature([crypto_x509.TLSFeatureType.status_request]),
                                            critical=False)
        self._builder = builder

    def sign(self):
        """Signs the CSR with self.private_key using the DEFAULT_SIGNATURE algorithm"""
        return self._builder.sign(
            private_key=self.private_key.key,
            algorithm=DEFAULT_SIGNATURE_ALGORITHM,
        )

    @property
    def request(self):
        """Signed CSR"""
        return self.sign()

    @property
    def pem(self):
        """Returns the CSR serialized as a PEM"""
        return self.sign().public_bytes(encoding=serialization.Encoding.PEM)


class SigningRequest():
    """Already existing Certificate Signing Request, PEM or DER encoded"""
    def __init__(self, data):
        try:
            if CSR_PEM_HEADER in data:
                self.request = crypto_x509.load_pem_x509_csr(data)
            else:
                self.request = crypto_x509.load_der_x509_csr(data)
        except (TypeError, ValueError) as load_error:
            raise X509Error('Unable to parse CSR') from load_error

    @staticmethod
    def load(path):
        """Loads a CSR from disk"""
        with open(path, 'rb') as csr_file:
            return SigningRequest(csr_file.read())

    @property
    def pem(self):
        """Returns the CSR serialized as a PEM"""
        return self.request.public_bytes(encoding=serialization.Encoding.PEM)

    @property
    def common_name(self):
        """Subject common name, None if the CSR doesn't provide one"""
        return _common_name(self.request.subject)

    @property
    def domains(self):
        """Common name followed by the DNS SubjectAlternativeNames"""
        names = _dns_names(self.request.extensions)
        if self.common_name is not None:
            names.insert(0, self.common_name)
        return _unique(names)


class Certificate:
    """X.509 certificate"""
    def __init__(self, pem, parse_chain=True):
        try:
            self.certificate = crypto_x509.load_pem_x509_certificate(pem)
        except (TypeError, ValueError) as load_pem_error:
            raise X509Error('Unable to parse PEM') from load_pem_error

        self.chain = [self]
        if parse_chain:
            self._parse_chain_pem(pem[pem.index(PEM_HEADER) + len(self.pem):].lstrip())

    def _parse_chain_pem(self, pem):
        len_pem = len(pem)
        if len_pem <= PEM_HEADER_AND_FOOTER_LEN or PEM_HEADER not in pem:
            return

        self.chain.append(Certificate(pem, parse_chain=False))
        len_last_pem = len(self.chain[-1].pem)
        if len_pem - len_last_pem > PEM_HEADER_AND_FOOTER_LEN:
            self._parse_chain_pem(pem[len_last_pem:].lstrip())

    @staticmethod
    def load(path):
        """Loads the certificate from a PEM on disk"""
        with open(path, 'rb') as pem_file:
            return Certificate(pem_file.read())

    @property
    def pem(self):
        """Returns the certificate serialized as a PEM"""
        return self.certificate.public_bytes(encoding=serialization.Encoding.PEM)

    @property
    def chain_pem(self):
        """Returns the certificate followed by its chain serialized as PEM"""
        return b''.join(cert.pem for cert in self.chain)

    @property
    def is_ca(self):
        """Returns True if the certificate is flagged as a CA certificate"""
        try:
            basic_constraints = self.certificate.extensions.get_extension_for_class(crypto_x509.BasicConstraints)
        except ExtensionNotFound:
            return False
        return basic_constraints.value.ca

    @property
    def common_name(self):
        """Gets the Common Name (CN) of this certificate"""
        common_name = _common_name(self.certificate.subject)
        if common_name is None:
            raise X509Error('Unable to get the Common Name of the certificate')

        return common_name

    @property
    def issuer_common_name(self):
        """Gets the Common Name (CN) of the issuer of this certificate, None if missing"""
        return _common_name(self.certificate.issuer)

    @property
    def not_valid_after(self):
        """Expiration date as an aware UTC datetime"""
        return self.certificate.not_valid_after_utc

    @property
    def subject_alternative_names(self):
        """Gets the DNS subject alternative names in this certificate, as a list of strings"""
        return _dns_names(self.certificate.extensions)

    @property
    def domains(self):
        """Common name (if any) followed by the DNS subject alternative names, without duplicates"""
        names = self.subject_alternative_names
        common_name = _common_name(self.certificate.subject)
        if common_name is not None:
            names.insert(0, common_name)
        return _unique(names)

    def time_left(self, now=None):
        """timedelta till the certificate expires"""
        if now is None:
            now = datetime.now(timezone.utc)
        return self.not_valid_after - utc(now)

    def days_left(self, now=None):
        """Number of whole days till the certificate expires, truncated towards zero"""
        return int(self.time_left(now) / ONE_DAY)

    def save(self, path, mode=CertificateSaveMode.CERT_ONLY, embedded_key=None):
        """Persists the certificate on disk serialized as a PEM"""
        if mode is CertificateSaveMode.CERT_ONLY:
            save_chain = self.chain[0:1]
        elif mode is CertificateSaveMode.CHAIN_ONLY:
            save_chain = self.chain[1:]
        else:
            save_chain = self.chain

        if embedded_key is None:
            opener = None
        else:
            opener = secure_opener

        with open(path, 'wb', opener=opener) as pem_file:
            for cert in save_chain:
                pem_file.write(cert.pem)
            if embedded_key is not None:
                pem_file.write(embedded_key.private_pem)
