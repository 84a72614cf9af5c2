import pytest
from cryptography.hazmat.primitives import serialization

import signature_container
from pdfsig_lib import PdfSigner
from verify import BYTE_RANGE, find_signatures, verify, verify_file
from verifier import VerificationStatus


@pytest.fixture
def signed_pdf(key_provider, sample_pdf):
    with key_provider.acquire() as key:
        return PdfSigner(key_provider).sign_bytes(sample_pdf, key)


def test_unsigned_document(sample_pdf):
    assert verify(sample_pdf) == []


@pytest.mark.parametrize('data', [b'', b'garbage', b'%PDF-1.4\n%%EOF\n'])
def test_not_signed_data(data):
    assert verify(data) == []


def test_signed_document(signed_pdf):
    result, = verify(signed_pdf)

    assert result.valid
    assert result.detail is None
    assert result.trusted is None
    assert result.signing_time is not None
    assert result.as_dict()['status'] == 'ok'


def test_changed_last_byte(signed_pdf):
    tampered = signed_pdf[:-1] + b' '

    result, = verify(tampered)

    assert result.status is VerificationStatus.DIGEST_MISMATCH


def test_changed_first_byte(signed_pdf):
    result, = verify(signed_pdf.replace(b'%PDF-1.4', b'%PDF-1.5', 1))

    assert result.status is VerificationStatus.DIGEST_MISMATCH


def test_changed_signature_value(signed_pdf):
    signature, = find_signatures(signed_pdf)
    signature_hex = signature_container.parse(signature.contents).signature.hex().encode()
    position = signed_pdf.index(signature_hex) + len(signature_hex) // 2
    flipped = b'1' if signed_pdf[position:position + 1] == b'0' else b'0'
    tampered = signed_pdf[:position] + flipped + signed_pdf[position + 1:]

    result, = verify(tampered)

    assert result.status is VerificationStatus.SIGNATURE_INVALID


def test_blanked_container(signed_pdf):
    signature, = find_signatures(signed_pdf)
    first, second = signature.byte_ranges
    tampered = signed_pdf[:first.end + 1] + b'0' * (second.offset - first.end - 2) \
        + signed_pdf[second.offset - 1:]

    result, = verify(tampered)

    assert result.status is VerificationStatus.SIGNATURE_INVALID


def test_shifted_byte_range(signed_pdf):
    match = BYTE_RANGE.search(signed_pdf)
    br = [int(value) for value in match.groups()]
    shifted = b'[%010d %010d %010d %010d]' % (0, br[1] + 2, br[2], br[3])
    tampered = signed_pdf[:match.start()] + b'/ByteRange ' + shifted + signed_pdf[match.end():]

    result, = verify(tampered)

    assert result.status is VerificationStatus.SIGNATURE_INVALID
    assert not result.covers_whole_document


def test_byte_range_past_the_end(signed_pdf):
    match = BYTE_RANGE.search(signed_pdf)
    br = [int(value) for value in match.groups()]
    bogus = b'[%010d %010d %010d %010d]' % (0, br[1], br[2], br[3] + 10)
    tampered = signed_pdf[:match.start()] + b'/ByteRange ' + bogus + signed_pdf[match.end():]

    result, = verify(tampered)

    assert result.status is VerificationStatus.SIGNATURE_INVALID
    assert 'invalid /ByteRange' in result.detail


def test_appended_data(signed_pdf):
    result, = verify(signed_pdf + b'% appended\n')

    assert result.valid
    assert not result.covers_whole_document


def test_trusted_signer(signed_pdf, rsa_pair, other_rsa_pair):
    certificate = rsa_pair[1]

    assert verify(signed_pdf, [certificate])[0].trusted is True
    assert verify(signed_pdf, [other_rsa_pair[1]])[0].trusted is False
    der = certificate.public_bytes(serialization.Encoding.DER)
    assert verify(signed_pdf, [der])[0].trusted is True


def test_untrusted_signer_keeps_status(signed_pdf, other_rsa_pair):
    result, = verify(signed_pdf, [other_rsa_pair[1]])

    assert result.status is VerificationStatus.OK


def test_verify_file(signed_pdf, tmp_path):
    pdf_path = tmp_path / "signed.pdf"
    pdf_path.write_bytes(signed_pdf)

    result, = verify_file(str(pdf_path))

    assert result.valid


def flip(data, position, mask=0x01):
    return data[:position] + bytes([data[position] ^ mask]) + data[position + 1:]


def test_signature_is_read_from_its_field(signed_pdf):
    signature, = find_signatures(signed_pdf)

    assert signature.name == 'Signature1'
    assert signature.problem is None


def test_damaged_byte_range_keyword(signed_pdf):
    tampered = flip(signed_pdf, signed_pdf.index(b'/ByteRange') + 1)

    result, = verify(tampered)

    assert result.status is VerificationStatus.SIGNATURE_INVALID
    assert 'unreadable /ByteRange' in result.detail


def test_damaged_byte_range_digit(signed_pdf):
    match = BYTE_RANGE.search(signed_pdf)

    result, = verify(flip(signed_pdf, match.end(2) - 1, mask=0x40))

    assert result.status is VerificationStatus.SIGNATURE_INVALID


@pytest.mark.parametrize('keyword', [b'/AcroForm', b'/Fields', b'/FT/Sig', b'/Contents'])
def test_damaged_form_keywords(signed_pdf, keyword):
    tampered = flip(signed_pdf, signed_pdf.rindex(keyword) + 1)

    results = verify(tampered)

    assert results
    assert not any(result.valid for result in results)
