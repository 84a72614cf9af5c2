from datetime import datetime, timezone
from enum import Enum
from os import path, remove, replace, fsync
from tempfile import mkstemp

import signature_container
from digest_engine import DigestAlgorithm, digest
from my_config_loader import MyConfigLoader
from my_logger import MyLogger
from pdf_builder import PdfBuilder, estimate_container_size
from verify import verify
from verifier import VerificationStatus


# Custom exceptions:
class PdfVerificationError(Exception):
    ''' Raised when a freshly signed pdf does not verify '''
    pass


class OutputPathError(ValueError):
    ''' Raised when the signed pdf would replace its input '''
    pass


class SigningState(Enum):
    START = 'start'
    PLACEHOLDER_RESERVED = 'placeholder reserved'
    DIGEST_COMPUTED = 'digest computed'
    CONTAINER_BUILT = 'container built'
    FILLED = 'filled'
    DONE = 'done'


def get_signed_files_path(file_path):
    ''' Return `<name>(signed).pdf` next to `file_path` '''
    signed_file_base_path = path.dirname(file_path)
    signed_file_name, signed_file_extension = path.splitext(path.basename(file_path))
    signed_file_name = signed_file_name.replace('(signed)', '')
    return path.join(signed_file_base_path, f"{signed_file_name}(signed){signed_file_extension or '.pdf'}")


def save_file_content(file_path, content):
    ''' Atomically save `content` to `file_path` '''

    MyLogger().my_logger().info(f"saving output to {file_path}")
    fd, tmp_path = mkstemp(dir=path.dirname(path.abspath(file_path)), suffix='.tmp')
    try:
        with open(fd, 'wb') as tmp_file:
            tmp_file.write(content)
            tmp_file.flush()
            fsync(tmp_file.fileno())
        replace(tmp_path, file_path)
    except BaseException:
        if path.exists(tmp_path):
            remove(tmp_path)
        raise


class PdfSigner:
    '''
        Signs pdf documents with the key handed out by `key_provider`

        Any failure leaves no output file behind; the input file is never
        modified.
    '''

    def __init__(self, key_provider, sig_attributes=None, digest_algorithm=None,
                 placeholder_size=None, signed_attributes=None, verify_after_sign=None,
                 allow_expired_certificate=None):
        config = MyConfigLoader().get_signer_config()
        self.key_provider = key_provider
        self.sig_attributes = dict(sig_attributes or {})
        if not isinstance(digest_algorithm, DigestAlgorithm):
            digest_algorithm = DigestAlgorithm.from_name(digest_algorithm or config["digest_algorithm"])
        self.digest_algorithm = digest_algorithm
        self.placeholder_size = placeholder_size or config["placeholder_size"]
        self.signed_attributes = config["signed_attributes"] \
            if signed_attributes is None else signed_attributes
        self.verify_after_sign = config["verify_after_sign"] \
            if verify_after_sign is None else verify_after_sign
        self.allow_expired_certificate = config["allow_expired_certificate"] \
            if allow_expired_certificate is None else allow_expired_certificate
        self.state = SigningState.START

    def _advance(self, state):
        self.state = state
        MyLogger().my_logger().info(f"signing state: {state.value}")

    def sign_pdf(self, file_path, output_path=None):
        '''
            Return the path of the signed copy of `file_path`

            Param:
                file_path: complete or relative path of the pdf to sign
                output_path: destination, `<name>(signed).pdf` by default
        '''
        output_path = output_path or get_signed_files_path(file_path)
        if path.abspath(output_path) == path.abspath(file_path):
            raise OutputPathError("the signed pdf must not overwrite its input")

        MyLogger().my_logger().info(f"reading pdf file {file_path}")
        with open(file_path, 'rb') as fp:
            datau = fp.read()

        with self.key_provider.acquire() as key:
            datas = self.sign_bytes(datau, key)

        save_file_content(output_path, datas)
        self._advance(SigningState.DONE)
        return output_path

    def sign_bytes(self, datau, key):
        ''' Return the signed version of the pdf `datau`, kept in memory '''
        self._advance(SigningState.START)
        key.check_key_type()
        if not self.allow_expired_certificate:
            MyLogger().my_logger().info("Check for certificate time validity")
            key.check_validity()

        signing_time = datetime.now(timezone.utc).replace(microsecond=0)
        sig_attributes = dict(MyConfigLoader().get_pdf_config())
        sig_attributes.update(self.sig_attributes)
        sig_attributes['name'] = key.common_name
        sig_attributes['signing_time'] = signing_time

        builder = PdfBuilder()
        document = bytearray(datau)
        placeholder, byte_ranges = builder.reserve(
            document, self.placeholder_size or estimate_container_size(key), sig_attributes)
        self._advance(SigningState.PLACEHOLDER_RESERVED)

        digest_value = digest(byte_ranges, document, self.digest_algorithm)
        self._advance(SigningState.DIGEST_COMPUTED)

        container = signature_container.build(
            digest_value, key, self.signed_attributes, signing_time)
        self._advance(SigningState.CONTAINER_BUILT)

        builder.fill(document, placeholder, container.encoded)
        self._advance(SigningState.FILLED)

        datas = bytes(document)
        if self.verify_after_sign:
            self._check_signature(datas)
        return datas

    def _check_signature(self, datas):
        results = verify(datas)
        if len(results) != 1:
            raise PdfVerificationError(f"expected one signature, found {len(results)}")
        for key, res in enumerate(results, start=1):
            MyLogger().my_logger().info(f"Signature {key}: {res.status.value}")
            if res.valid:
                continue
            if self.allow_expired_certificate and res.status is VerificationStatus.CERTIFICATE_INVALID:
                MyLogger().my_logger().warning(f"Signature {key}: {res.detail}")
                continue
            raise PdfVerificationError(
                f"Verification of Signature {key} failed: {res.status.value} ({res.detail})")
