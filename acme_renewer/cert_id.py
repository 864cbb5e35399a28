"""
Module computing the ARI certificate identifier (CertID) of a certificate

The CertID is the base64url encoded (without padding) DER serialization of:

    CertID ::= SEQUENCE {
        hashAlgorithm   AlgorithmIdentifier,  -- without parameters
        issuerNameHash  OCTET STRING,
        issuerKeyHash   OCTET STRING,
        serialNumber    CertificateSerialNumber }

issuerNameHash and issuerKeyHash are computed exactly like OCSP does, so the
OCSP request builder provided by cryptography is used to get them.
"""
import base64

from asn1crypto import algos, core
from cryptography.hazmat.primitives import hashes
from cryptography.x509 import ocsp as crypto_ocsp

DEFAULT_HASH_NAME = 'SHA-256'

# hash names as exchanged by ARI clients (Go crypto.Hash.String() flavour)
HASH_ALGORITHMS = {
    'SHA-1': (hashes.SHA1, 'sha1'),
    'SHA-224': (hashes.SHA224, 'sha224'),
    'SHA-256': (hashes.SHA256, 'sha256'),
    'SHA-384': (hashes.SHA384, 'sha384'),
    'SHA-512': (hashes.SHA512, 'sha512'),
}


class CertIDError(Exception):
    """Base exception class for the CertID module"""


class CertIDInvalidInputError(CertIDError):
    """Missing leaf or issuer certificate"""


class CertIDEncodingError(CertIDError):
    """Unknown hash algorithm or ASN.1 encoding failure"""


class HashAlgorithm(core.Sequence):
    """AlgorithmIdentifier without the optional parameters"""
    _fields = [
        ('algorithm', algos.DigestAlgorithmId),
    ]


class CertID(core.Sequence):
    """ASN.1 CertID structure"""
    _fields = [
        ('hash_algorithm', HashAlgorithm),
        ('issuer_name_hash', core.OctetString),
        ('issuer_key_hash', core.OctetString),
        ('serial_number', core.Integer),
    ]


def _crypto_certificate(certificate):
    # accept both cryptography certificates and acme_renewer.x509.Certificate wrappers
    return getattr(certificate, 'certificate', certificate)


def make_cert_id(leaf, issuer, hash_name=DEFAULT_HASH_NAME):
    """Returns the CertID of the leaf certificate issued by issuer using the hash algorithm hash_name"""
    if leaf is None:
        raise CertIDInvalidInputError('leaf certificate is required to compute the CertID')
    if issuer is None:
        raise CertIDInvalidInputError('issuer certificate is required to compute the CertID')

    try:
        hash_class, asn1_algorithm = HASH_ALGORITHMS[hash_name]
    except KeyError:
        raise CertIDEncodingError(f'unsupported hash algorithm: {hash_name}') from None

    leaf = _crypto_certificate(leaf)
    issuer = _crypto_certificate(issuer)

    try:
        builder = crypto_ocsp.OCSPRequestBuilder().add_certificate(leaf, issuer, hash_class())
        ocsp_request = builder.build()
        cert_id = CertID({
            'hash_algorithm': {'algorithm': asn1_algorithm},
            'issuer_name_hash': ocsp_request.issuer_name_hash,
            'issuer_key_hash': ocsp_request.issuer_key_hash,
            'serial_number': leaf.serial_number,
        })
        der = cert_id.dump()
    except (TypeError, ValueError) as encoding_error:
        raise CertIDEncodingError('unable to encode the CertID') from encoding_error

    return base64.urlsafe_b64encode(der).decode('ascii').rstrip('=')
