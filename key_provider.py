from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from os import path, makedirs

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, utils
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from my_logger import MyLogger


####################################################################
#       CONFIGURATION                                              #
####################################################################
DEFAULT_SUBJECT = "CN=Test Certificate, OU=Development, O=My Company, C=US"
DEFAULT_KEY_SIZE = 2048
DEFAULT_VALIDITY_DAYS = 365
PUBLIC_EXPONENT = 65537
####################################################################


# Custom exceptions:
class UnsupportedKeyType(TypeError):
    ''' Raised for keys other than RSA '''
    pass


class SigningError(Exception):
    ''' Raised when the private key is unusable or the signing operation fails '''
    pass


class CertificateValidityError(SigningError):
    ''' Raised when signing with a certificate outside its validity interval '''
    pass


class KeyPolicy(Enum):
    LOAD = 'load'
    LOAD_OR_GENERATE = 'load-or-generate'


class SigningKeyMaterial:
    '''
        Signer certificate plus the means to sign with its private key

        The key is either held in memory (`private_key`) or lives on a
        device reached through `signer(data, digest_algorithm, prehashed)`.
    '''

    def __init__(self, certificate, private_key=None, signer=None):
        self.certificate = certificate
        self._private_key = private_key
        self._signer = signer

    @property
    def certificate_der(self):
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def signature_size(self):
        return (self.certificate.public_key().key_size + 7) // 8

    @property
    def common_name(self):
        names = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return names[0].value if names else self.certificate.subject.rfc4514_string()

    @property
    def released(self):
        return self._private_key is None and self._signer is None

    def check_key_type(self):
        if not isinstance(self.certificate.public_key(), rsa.RSAPublicKey):
            raise UnsupportedKeyType(
                f"{type(self.certificate.public_key()).__name__} keys are not supported, only RSA")
        if self._private_key is not None and not isinstance(self._private_key, rsa.RSAPrivateKey):
            raise UnsupportedKeyType(
                f"{type(self._private_key).__name__} keys are not supported, only RSA")

    def check_validity(self, now=None):
        ''' Raise `CertificateValidityError` unless `now` lies in the validity interval '''
        now = now or datetime.now(timezone.utc)
        not_before, not_after = certificate_validity(self.certificate)
        if now < not_before:
            raise CertificateValidityError("Certificate not valid yet")
        if now > not_after:
            raise CertificateValidityError("Certificate expired")

    def sign(self, data, digest_algorithm, prehashed=False):
        '''
            Return the RSA PKCS#1 v1.5 signature of `data`

            Params:
                data: bytes to sign, or their digest when `prehashed`
                digest_algorithm: DigestAlgorithm of the signature
                prehashed: `data` is already a digest
        '''
        self.check_key_type()
        if self.released:
            raise SigningError("No private key available")

        if self._signer is not None:
            try:
                return bytes(self._signer(data, digest_algorithm, prehashed))
            except SigningError:
                raise
            except Exception as e:
                raise SigningError(f"Signing device rejected the request: {e}") from e

        hash_algorithm = digest_algorithm.cryptography_hash()
        if prehashed:
            hash_algorithm = utils.Prehashed(hash_algorithm)
        try:
            return self._private_key.sign(data, padding.PKCS1v15(), hash_algorithm)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Signing failed: {e}") from e

    def release(self):
        ''' Drop every reference to the private key '''
        self._private_key = None
        self._signer = None


def certificate_validity(certificate):
    ''' Return the (not_before, not_after) interval of `certificate` as aware datetimes '''
    if hasattr(certificate, 'not_valid_before_utc'):
        return certificate.not_valid_before_utc, certificate.not_valid_after_utc
    return (certificate.not_valid_before.replace(tzinfo=timezone.utc),
            certificate.not_valid_after.replace(tzinfo=timezone.utc))


def generate_self_signed(subject=DEFAULT_SUBJECT, key_size=DEFAULT_KEY_SIZE,
                         validity_days=DEFAULT_VALIDITY_DAYS):
    '''
        Return a new (private_key, certificate) pair

        The certificate is self-signed, not a CA and only usable for
        digital signature and non-repudiation.
    '''
    MyLogger().my_logger().info(f"generating {key_size} bit RSA key for {subject}")
    private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    name = x509.Name.from_rfc4514_string(
        ",".join(part.strip() for part in subject.split(",")))
    now = datetime.now(timezone.utc).replace(microsecond=0)

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=True, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False), critical=True)
        .sign(private_key, hashes.SHA256())
    )
    return private_key, certificate


class Pkcs12KeyProvider:
    '''
        Key material stored in a password protected PKCS#12 bundle

        With `KeyPolicy.LOAD_OR_GENERATE` a missing bundle is replaced by a
        fresh self-signed certificate saved under the same passphrase.
    '''

    def __init__(self, pfx_path, passphrase, policy=KeyPolicy.LOAD_OR_GENERATE,
                 subject=DEFAULT_SUBJECT, key_size=DEFAULT_KEY_SIZE,
                 validity_days=DEFAULT_VALIDITY_DAYS):
        self.pfx_path = pfx_path
        self.policy = KeyPolicy(policy)
        self.subject = subject
        self.key_size = key_size
        self.validity_days = validity_days
        self._passphrase = passphrase.encode() if isinstance(passphrase, str) else passphrase

    @contextmanager
    def acquire(self):
        ''' Yield the `SigningKeyMaterial`, released on every exit path '''
        key = self.load()
        try:
            yield key
        finally:
            key.release()

    def load(self):
        if not path.isfile(self.pfx_path):
            if self.policy is KeyPolicy.LOAD:
                raise FileNotFoundError(f"key bundle {self.pfx_path} not found")
            self.generate()

        MyLogger().my_logger().info(f"loading key bundle {self.pfx_path}")
        with open(self.pfx_path, 'rb') as pfx_file:
            pfx_bytes = pfx_file.read()
        try:
            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                pfx_bytes, self._passphrase or None)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Could not load key material from {self.pfx_path}") from e
        if private_key is None or certificate is None:
            raise SigningError(f"{self.pfx_path} holds no key and certificate pair")

        return SigningKeyMaterial(certificate, private_key=private_key)

    def generate(self):
        ''' Create and persist a self-signed bundle at `pfx_path` '''
        private_key, certificate = generate_self_signed(
            self.subject, self.key_size, self.validity_days)
        if self._passphrase:
            encryption = serialization.BestAvailableEncryption(self._passphrase)
        else:
            encryption = serialization.NoEncryption()
        pfx_bytes = pkcs12.serialize_key_and_certificates(
            b'signature', private_key, certificate, None, encryption)

        folder = path.dirname(path.abspath(self.pfx_path))
        if not path.isdir(folder):
            makedirs(folder)
        MyLogger().my_logger().info(f"saving key bundle to {self.pfx_path}")
        with open(self.pfx_path, 'wb') as pfx_file:
            pfx_file.write(pfx_bytes)
        return certificate
