import pytest
from asn1crypto import algos
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, utils
from PyKCS11 import LowLevel, PyKCS11Error

import signature_util
from digest_engine import DigestAlgorithm
from key_provider import SigningError
from pdfsig_lib import PdfSigner
from signature_util import Pkcs11KeyProvider, SignatureUtils, SmartCardConnectionError
from verify import verify

PIN = "1234"
HASHES = {
    LowLevel.CKM_SHA256_RSA_PKCS: hashes.SHA256,
    LowLevel.CKM_SHA384_RSA_PKCS: hashes.SHA384,
    LowLevel.CKM_SHA512_RSA_PKCS: hashes.SHA512,
}


class FakeSession:
    ''' Token holding one certificate and its private key '''

    def __init__(self, private_key, certificate, fail_sign=False):
        self.private_key = private_key
        self.certificate_value = certificate.public_bytes(serialization.Encoding.DER)
        self.fail_sign = fail_sign
        self.logged_in = False
        self.closed = False
        self.mechanisms = []

    def login(self, pin):
        if pin != PIN:
            raise PyKCS11Error(LowLevel.CKR_PIN_INCORRECT)
        self.logged_in = True

    def logout(self):
        self.logged_in = False

    def closeSession(self):
        self.closed = True

    def findObjects(self, template):
        template = dict(template)
        if template[LowLevel.CKA_CLASS] == LowLevel.CKO_CERTIFICATE:
            return ['certificate']
        if template[LowLevel.CKA_CLASS] == LowLevel.CKO_PRIVATE_KEY \
                and template.get(LowLevel.CKA_ID) == (1,):
            return ['private key']
        return []

    def getAttributeValue(self, obj, attributes):
        if attributes == [LowLevel.CKA_VALUE]:
            return [list(self.certificate_value)]
        return [(1,)]

    def sign(self, key, data, mechanism):
        assert key == 'private key'
        if self.fail_sign:
            raise PyKCS11Error(LowLevel.CKR_DEVICE_ERROR)
        mechanism_type = mechanism.to_native().mechanism
        self.mechanisms.append(mechanism_type)
        if mechanism_type == LowLevel.CKM_RSA_PKCS:
            digest_info = algos.DigestInfo.load(bytes(data))
            algorithm = DigestAlgorithm.from_name(digest_info['digest_algorithm']['algorithm'].native)
            signature = self.private_key.sign(
                digest_info['digest'].native, padding.PKCS1v15(),
                utils.Prehashed(algorithm.cryptography_hash()))
        else:
            signature = self.private_key.sign(
                bytes(data), padding.PKCS1v15(), HASHES[mechanism_type]())
        return list(signature)


class FakeLib:

    def __init__(self, session, slots=(0,), default_driver=True):
        self.session = session
        self.slots = list(slots)
        self.default_driver = default_driver
        self.loaded = []

    def __call__(self):
        return self

    def load(self, pkcs11dll_filename=None):
        if pkcs11dll_filename is None and not self.default_driver:
            raise PyKCS11Error(-1)
        self.loaded.append(pkcs11dll_filename)

    def getSlotList(self, tokenPresent=False):
        return self.slots

    def openSession(self, slot):
        return self.session


@pytest.fixture
def session(rsa_pair):
    return FakeSession(*rsa_pair)


@pytest.fixture
def fake_lib(monkeypatch, session):
    lib = FakeLib(session)
    monkeypatch.setattr(signature_util, 'PyKCS11Lib', lib)
    return lib


def test_sign_with_token(fake_lib, session, sample_pdf):
    provider = Pkcs11KeyProvider(PIN)

    with provider.acquire() as key:
        signed = PdfSigner(provider).sign_bytes(sample_pdf, key)
        assert session.logged_in

    assert key.released
    assert not session.logged_in
    assert session.closed
    assert session.mechanisms == [LowLevel.CKM_SHA256_RSA_PKCS]
    result, = verify(signed)
    assert result.valid
    assert result.signer == 'Test Certificate'


def test_bare_digest_with_token(fake_lib, session, sample_pdf):
    provider = Pkcs11KeyProvider(PIN)

    with provider.acquire() as key:
        signed = PdfSigner(provider, digest_algorithm=DigestAlgorithm.SHA512,
                           signed_attributes=False).sign_bytes(sample_pdf, key)

    assert session.mechanisms == [LowLevel.CKM_RSA_PKCS]
    assert verify(signed)[0].valid


def test_wrong_pin(fake_lib, session):
    with pytest.raises(SmartCardConnectionError):
        with Pkcs11KeyProvider("0000").acquire():
            pass
    assert not session.closed


def test_token_failure_is_a_signing_error(fake_lib, session, sample_pdf):
    session.fail_sign = True
    provider = Pkcs11KeyProvider(PIN)

    with pytest.raises(SigningError):
        with provider.acquire() as key:
            PdfSigner(provider).sign_bytes(sample_pdf, key)
    assert session.closed


def test_no_token(monkeypatch, session):
    monkeypatch.setattr(signature_util, 'PyKCS11Lib', FakeLib(session, slots=()))

    with pytest.raises(SmartCardConnectionError, match="slot"):
        SignatureUtils.fetch_smart_card_sessions()


def test_no_driver(monkeypatch, session):
    monkeypatch.setattr(signature_util, 'PyKCS11Lib', FakeLib(session, default_driver=False))

    with pytest.raises(SmartCardConnectionError, match="driver"):
        SignatureUtils.fetch_smart_card_sessions()


def test_drivers_from_folder(monkeypatch, session, tmp_path):
    lib = FakeLib(session, default_driver=False)
    monkeypatch.setattr(signature_util, 'PyKCS11Lib', lib)
    (tmp_path / "token.so").write_bytes(b'')

    assert SignatureUtils.fetch_smart_card_sessions(str(tmp_path)) == [session]
    assert lib.loaded == [str(tmp_path / "token.so")]
