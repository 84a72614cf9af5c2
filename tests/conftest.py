import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from os import path

# must be set before the config singleton is first used
os.environ["PDFSIG_CONFIG"] = path.join(path.dirname(__file__), "pdfsig_test_config.json")

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from key_provider import SigningKeyMaterial, generate_self_signed

PASSPHRASE = "password"
LOREM = b'(Lorem ipsum dolor sit amet, consectetur adipiscing elit) Tj T*\n'


def make_pdf(body_size=10 * 1024, page_count=1, page_extra=b'', root_extra=b'', extra_objs=()):
    '''
        Return a small but well formed pdf of roughly `body_size` bytes

        `extra_objs` bodies are numbered from 6 + page_count on, after the info dictionary.
    '''
    content = b'BT /F1 10 Tf 12 TL 72 760 Td\n' + LOREM * (body_size // len(LOREM) + 1) + b'ET'
    kids = b' '.join(b'%d 0 R' % (5 + i) for i in range(page_count))
    objs = {
        1: b'<< /Type /Catalog /Pages 2 0 R' + root_extra + b' >>',
        2: b'<< /Type /Pages /Kids [' + kids + b'] /Count %d >>' % page_count,
        3: b'<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>',
        4: b'<< /Length %d >>\nstream\n' % len(content) + content + b'\nendstream',
    }
    for i in range(page_count):
        objs[5 + i] = (b'<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R'
                       b' /Resources << /Font << /F1 3 0 R >> >>' + page_extra + b' >>')
    info = 5 + page_count
    objs[info] = b'<< /Producer (pdfsig tests) /Title (Sample) >>'
    for i, body in enumerate(extra_objs, start=info + 1):
        objs[i] = body
    size = info + 1 + len(extra_objs)

    out = b'%PDF-1.4\n%\xe2\xe3\xcf\xd3\n'
    offsets = {}
    for no in sorted(objs):
        offsets[no] = len(out)
        out += b'%d 0 obj\n' % no + objs[no] + b'\nendobj\n'
    startxref = len(out)
    out += b'xref\n0 %d\n0000000000 65535 f \n' % size
    for no in range(1, size):
        out += b'%010d 00000 n \n' % offsets[no]
    out += (b'trailer\n<< /Size %d /Root 1 0 R /Info %d 0 R'
            b' /ID [<0123456789abcdef><0123456789abcdef>] >>\nstartxref\n%d\n%%%%EOF\n'
            % (size, info, startxref))
    return out


def make_certificate(private_key, subject="CN=Test Certificate", not_before=None,
                     not_after=None, signing_usage=True):
    ''' Return a self-signed certificate with the given validity and key usage '''
    now = datetime.now(timezone.utc).replace(microsecond=0)
    name = x509.Name.from_rfc4514_string(subject)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=30))
        .add_extension(x509.KeyUsage(
            digital_signature=signing_usage, content_commitment=signing_usage,
            key_encipherment=False, data_encipherment=False, key_agreement=False,
            key_cert_sign=not signing_usage, crl_sign=False, encipher_only=False,
            decipher_only=False), critical=True)
        .sign(private_key, hashes.SHA256())
    )


class StaticKeyProvider:
    ''' Hands out fresh key material for a fixed key pair '''

    def __init__(self, private_key, certificate):
        self.private_key = private_key
        self.certificate = certificate
        self.last_key = None

    @contextmanager
    def acquire(self):
        self.last_key = SigningKeyMaterial(self.certificate, private_key=self.private_key)
        try:
            yield self.last_key
        finally:
            self.last_key.release()


@pytest.fixture(scope="session")
def rsa_pair():
    return generate_self_signed()


@pytest.fixture(scope="session")
def other_rsa_pair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key, make_certificate(private_key, "CN=Someone Else")


@pytest.fixture
def key(rsa_pair):
    private_key, certificate = rsa_pair
    return SigningKeyMaterial(certificate, private_key=private_key)


@pytest.fixture
def ec_key():
    private_key = ec.generate_private_key(ec.SECP256R1())
    return SigningKeyMaterial(make_certificate(private_key), private_key=private_key)


@pytest.fixture
def key_provider(rsa_pair):
    return StaticKeyProvider(*rsa_pair)


@pytest.fixture(scope="session")
def pfx_file(tmp_path_factory, rsa_pair):
    private_key, certificate = rsa_pair
    pfx_path = tmp_path_factory.mktemp("keys") / "signature.pfx"
    pfx_path.write_bytes(pkcs12.serialize_key_and_certificates(
        b'signature', private_key, certificate, None,
        serialization.BestAvailableEncryption(PASSPHRASE.encode())))
    return pfx_path


@pytest.fixture
def sample_pdf():
    return make_pdf()


@pytest.fixture
def sample_pdf_file(tmp_path, sample_pdf):
    pdf_path = tmp_path / "original.pdf"
    pdf_path.write_bytes(sample_pdf)
    return pdf_path
