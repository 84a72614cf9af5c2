from datetime import datetime, timezone
from enum import Enum

from asn1crypto.x509 import Certificate as Asn1Certificate
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from OpenSSL import crypto

from digest_engine import ByteRangeError, digest
from my_logger import MyLogger
from signature_container import MalformedContainer, parse


class VerificationStatus(Enum):
    OK = 'ok'
    DIGEST_MISMATCH = 'digest mismatch'
    SIGNATURE_INVALID = 'signature invalid'
    CERTIFICATE_INVALID = 'certificate invalid'


class VerificationResult:
    '''
        Outcome of the verification of one embedded signature

        `trusted` is None unless trust anchors were supplied; it never
        changes `status`.
    '''

    def __init__(self, status, detail=None, signer=None, signing_time=None,
                 covers_whole_document=True, trusted=None):
        self.status = status
        self.detail = detail
        self.signer = signer
        self.signing_time = signing_time
        self.covers_whole_document = covers_whole_document
        self.trusted = trusted

    @property
    def valid(self):
        return self.status is VerificationStatus.OK

    def as_dict(self):
        return {
            'valid': self.valid,
            'status': self.status.value,
            'detail': self.detail,
            'signer': self.signer,
            'signing_time': self.signing_time,
            'covers_whole_document': self.covers_whole_document,
            'trusted': self.trusted,
        }

    def __repr__(self):
        return f"VerificationResult({self.status.value!r}, detail={self.detail!r}, signer={self.signer!r})"


def _signer_name(certificate):
    names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return names[0].value if names else certificate.subject.rfc4514_string()


def check_certificate(cert_value, now=None):
    ''' Return why `cert_value` (DER) cannot vouch for a signature, None if it can '''
    try:
        certificate_x509 = crypto.load_certificate(crypto.FILETYPE_ASN1, bytes(cert_value))
    except crypto.Error as e:
        return f"certificate is not well formed: {e}"

    now = now or datetime.now(timezone.utc)
    not_before = datetime.strptime(
        certificate_x509.get_notBefore().decode(), "%Y%m%d%H%M%SZ").replace(tzinfo=timezone.utc)
    not_after = datetime.strptime(
        certificate_x509.get_notAfter().decode(), "%Y%m%d%H%M%SZ").replace(tzinfo=timezone.utc)
    if now < not_before:
        return "certificate not valid yet"
    if now > not_after:
        return "certificate expired"

    key_usage = Asn1Certificate.load(bytes(cert_value)).key_usage_value
    if key_usage is not None and not key_usage.native & {'digital_signature', 'non_repudiation'}:
        return "certificate key usage does not allow signing"
    return None


def is_trusted(certificate, certs):
    ''' Return whether `certificate` is one of `certs` or directly issued by one of them '''
    for trusted in certs:
        if trusted == certificate:
            return True
        if trusted.subject != certificate.issuer:
            continue
        try:
            certificate.verify_directly_issued_by(trusted)
            return True
        except (ValueError, TypeError, InvalidSignature):
            continue
    return False


def verify(contents, byte_ranges, pdfdata, certs=None, covers_whole_document=True):
    '''
        Return the `VerificationResult` of one embedded signature

        Params:
            contents: container bytes found in the placeholder
            byte_ranges: ByteRange list the signature claims to cover
            pdfdata: whole signed document
            certs: optional trusted cryptography certificates
            covers_whole_document: whether the ranges reach the end of file
    '''
    try:
        container = parse(contents)
    except MalformedContainer as e:
        return VerificationResult(VerificationStatus.SIGNATURE_INVALID, str(e),
                                  covers_whole_document=covers_whole_document)

    try:
        certificate = x509.load_der_x509_certificate(container.certificate)
    except ValueError as e:
        return VerificationResult(VerificationStatus.CERTIFICATE_INVALID,
                                  f"certificate is not well formed: {e}",
                                  covers_whole_document=covers_whole_document)
    result = VerificationResult(
        VerificationStatus.OK, signer=_signer_name(certificate),
        signing_time=container.signing_time, covers_whole_document=covers_whole_document)

    try:
        digest_value = digest(byte_ranges, pdfdata, container.digest_algorithm)
    except ByteRangeError as e:
        result.status, result.detail = VerificationStatus.SIGNATURE_INVALID, str(e)
        return result

    public_key = certificate.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        result.status = VerificationStatus.SIGNATURE_INVALID
        result.detail = f"unsupported key type {type(public_key).__name__}"
        return result
    hash_algorithm = container.digest_algorithm.cryptography_hash()

    MyLogger().my_logger().info(f"checking signature of {result.signer}")
    if container.signed_attrs is not None:
        if container.digest != digest_value.value:
            result.status = VerificationStatus.DIGEST_MISMATCH
            result.detail = "document bytes do not match the signed digest"
            return result
        try:
            public_key.verify(container.signature, container.signed_attrs,
                              padding.PKCS1v15(), hash_algorithm)
        except InvalidSignature:
            result.status = VerificationStatus.SIGNATURE_INVALID
            result.detail = "signature does not match the signed attributes"
            return result
    else:
        try:
            signed_digest = public_key.recover_data_from_signature(
                container.signature, padding.PKCS1v15(), hash_algorithm)
        except (InvalidSignature, ValueError):
            result.status = VerificationStatus.SIGNATURE_INVALID
            result.detail = "signature cannot be opened with the signer key"
            return result
        if signed_digest != digest_value.value:
            result.status = VerificationStatus.DIGEST_MISMATCH
            result.detail = "document bytes do not match the signed digest"
            return result

    problem = check_certificate(container.certificate)
    if problem is not None:
        result.status, result.detail = VerificationStatus.CERTIFICATE_INVALID, problem
        return result

    if certs is not None:
        result.trusted = is_trusted(certificate, certs)
    return result
