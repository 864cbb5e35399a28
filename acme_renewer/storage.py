"""
Module containing the certificates storage

Every certificate is stored in a set of files sharing the (sanitized) domain
name as base name:
    - <domain>.crt: certificate (bundled with its issuer chain if requested)
    - <domain>.issuer.crt: issuer chain
    - <domain>.key: private key (when known)
    - <domain>.json: certificate metadata
    - <domain>.pem: certificate + private key (optional)
    - <domain>.pfx: PKCS#12 bundle (optional)
"""
import json
import logging
import os

import idna
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from acme_renewer.x509 import (Certificate, CertificateSaveMode, X509Error,
                               secure_opener)

BASEPATH = '/var/lib/acme-renewer/certificates'
DIRECTORY_MODE = 0o700

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class StorageError(Exception):
    """Base exception class for the storage module"""


def sanitized_domain(domain):
    """Returns the domain as it's used in file names: IDNA 2008 A-labels, '*' replaced by '_'"""
    labels = []
    for label in domain.replace('*', '_').split('.'):
        if not label.isascii():
            try:
                label = idna.alabel(label).decode('ascii')
            except idna.IDNAError:
                logger.warning("Unable to IDNA encode %s, using it as is", domain)
        labels.append(label)
    return '.'.join(labels)


class CertificatesStorage:
    """Reads and writes certificates in root_path"""
    def __init__(self, root_path=BASEPATH, pem=False, pfx=False, pfx_password=''):
        self.root_path = root_path
        self.pem = pem
        self.pfx = pfx
        self.pfx_password = pfx_password

    def file_name_for(self, domain, extension):
        """Returns the path of the file with the specified extension for domain"""
        return os.path.join(self.root_path, sanitized_domain(domain) + extension)

    def read_key_material(self, domain, extension='.key'):
        """Returns the raw contents of the file with the specified extension for domain"""
        path = self.file_name_for(domain, extension)
        try:
            with open(path, 'rb') as key_file:
                return key_file.read()
        except OSError as read_error:
            raise StorageError(f'Unable to read {path}') from read_error

    def read_certificate_chain(self, domain, extension='.crt'):
        """Returns the list of certificates (leaf first) stored for domain"""
        path = self.file_name_for(domain, extension)
        try:
            certificate = Certificate.load(path)
        except OSError as read_error:
            raise StorageError(f'Unable to read {path}') from read_error
        except X509Error as parse_error:
            raise StorageError(f'Unable to parse certificates in {path}') from parse_error

        return certificate.chain

    def _save_pfx(self, path, resource):
        if self.pfx_password:
            encryption = serialization.BestAvailableEncryption(self.pfx_password.encode('utf-8'))
        else:
            encryption = serialization.NoEncryption()

        pfx = pkcs12.serialize_key_and_certificates(
            name=resource.domain.encode('utf-8'),
            key=resource.private_key.key,
            cert=resource.certificate.certificate,
            cas=[issuer.certificate for issuer in resource.issuer_chain] or None,
            encryption_algorithm=encryption,
        )
        with open(path, 'wb', opener=secure_opener) as pfx_file:
            pfx_file.write(pfx)

    def save(self, resource):
        """Persists an acme_renewer.acme_requests.CertificateResource"""
        domain = resource.domain
        if resource.bundle:
            mode = CertificateSaveMode.FULL_CHAIN
        else:
            mode = CertificateSaveMode.CERT_ONLY

        try:
            os.makedirs(self.root_path, mode=DIRECTORY_MODE, exist_ok=True)
            resource.certificate.save(self.file_name_for(domain, '.crt'), mode=mode)
            if resource.issuer_chain:
                resource.certificate.save(self.file_name_for(domain, '.issuer.crt'),
                                          mode=CertificateSaveMode.CHAIN_ONLY)

            if resource.private_key is not None:
                resource.private_key.save(self.file_name_for(domain, '.key'))
                if self.pem:
                    resource.certificate.save(self.file_name_for(domain, '.pem'), mode=mode,
                                              embedded_key=resource.private_key)
                if self.pfx:
                    self._save_pfx(self.file_name_for(domain, '.pfx'), resource)

            with open(self.file_name_for(domain, '.json'), 'w') as metadata_file:
                json.dump({
                    'domain': domain,
                    'certUrl': resource.cert_url,
                }, metadata_file, indent=2)
        except (OSError, ValueError) as save_error:
            raise StorageError(f'Unable to save certificate for {domain}') from save_error

        logger.info("[%s] Certificate saved in %s", domain, self.root_path)
