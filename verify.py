# *-* coding: utf-8 *-*
import re
from io import BytesIO

from cryptography import x509
from pdfminer.pdfdocument import PDFDocument
from pdfminer.pdfparser import PDFParser
from pdfminer.pdftypes import resolve1

import verifier
from digest_engine import byte_ranges_from_array
from my_logger import MyLogger
from pdf_builder import PdfBuilder
from verifier import VerificationResult, VerificationStatus


BYTE_RANGE = re.compile(rb'/ByteRange\s*\[\s*(\d+)\s+(\d+)\s+(\d+)\s+(\d+)\s*\]')


class EmbeddedSignature:
    ''' Signature container found in a pdf, or the reason it cannot be read '''

    def __init__(self, byte_ranges, contents=None, covers_whole_document=False, problem=None,
                 name=None):
        self.byte_ranges = byte_ranges
        self.contents = contents
        self.covers_whole_document = covers_whole_document
        self.problem = problem
        self.name = name


def signature_dictionaries(pdfdata):
    ''' Return the (field name, signature dictionary) of each signed field of `pdfdata` '''
    try:
        parser = PDFParser(BytesIO(pdfdata))
        document = PDFDocument(parser)
        return [(name, resolve1(field.get('V')))
                for name, field in PdfBuilder().signature_fields(document)]
    except Exception as e:
        MyLogger().my_logger().warning(f"signature fields not readable: {e}")
        return []


def read_signature(pdfdata, br, name=None, expected_contents=None):
    ''' Return the `EmbeddedSignature` delimited by the /ByteRange array `br` '''
    if not isinstance(br, list) or len(br) != 4 or not all(isinstance(value, int) for value in br):
        return EmbeddedSignature(br, problem=f"unreadable /ByteRange {br!r}", name=name)
    if br[0] != 0 or br[1] >= br[2] or min(br) < 0 or br[2] + br[3] > len(pdfdata):
        return EmbeddedSignature(br, problem=f"invalid /ByteRange {br}", name=name)
    gap = pdfdata[br[1]:br[2]]
    if gap[:1] != b'<' or gap[-1:] != b'>':
        return EmbeddedSignature(
            br, problem=f"/ByteRange {br} does not exclude exactly the /Contents string", name=name)
    try:
        contents = bytes.fromhex(gap[1:-1].decode('ascii'))
    except ValueError:
        return EmbeddedSignature(
            br, problem=f"/Contents of /ByteRange {br} is not a hex string", name=name)
    if expected_contents is not None and expected_contents != contents:
        return EmbeddedSignature(
            br, problem=f"/ByteRange {br} does not exclude the /Contents of the signature", name=name)
    return EmbeddedSignature(
        byte_ranges_from_array(br), contents, br[2] + br[3] == len(pdfdata), name=name)


def find_signatures(pdfdata):
    '''
        Return an `EmbeddedSignature` for each signature of `pdfdata`

        Signed fields of the AcroForm come first; /ByteRange arrays no field
        points at are reported as well, so a damaged form still yields them.
    '''
    found = []
    seen = set()
    for name, sig in signature_dictionaries(pdfdata):
        if not isinstance(sig, dict):
            found.append(EmbeddedSignature(None, problem=f"{name} has no signature dictionary",
                                           name=name))
            continue
        br = resolve1(sig.get('ByteRange'))
        if isinstance(br, list):
            br = [resolve1(value) for value in br]
            if all(isinstance(value, int) for value in br):
                seen.add(tuple(br))
        contents = resolve1(sig.get('Contents'))
        if not isinstance(contents, bytes):
            found.append(EmbeddedSignature(br, problem=f"{name} has no /Contents string", name=name))
            continue
        found.append(read_signature(pdfdata, br, name, contents))

    for match in BYTE_RANGE.finditer(pdfdata):
        br = [int(value, 10) for value in match.groups()]
        if tuple(br) in seen:
            continue
        seen.add(tuple(br))
        found.append(read_signature(pdfdata, br))
    return found


def verify(pdfdata, certs=None):
    '''
        Return the `VerificationResult` of each signature in the pdf

        Params:
            pdfdata: Pdf content as bytes
            certs: List of trusted certificates (cryptography objects or DER)
    '''
    if certs is not None:
        certs = [cert if isinstance(cert, x509.Certificate) else x509.load_der_x509_certificate(cert)
                 for cert in certs]

    pdfdata = bytes(pdfdata)
    verifier_results = []
    for key, signature in enumerate(find_signatures(pdfdata), start=1):
        if signature.problem is not None:
            result = VerificationResult(VerificationStatus.SIGNATURE_INVALID, signature.problem,
                                        covers_whole_document=False)
        else:
            result = verifier.verify(signature.contents, signature.byte_ranges, pdfdata, certs,
                                     signature.covers_whole_document)
        MyLogger().my_logger().info(f"Signature {key}: {result.status.value}")
        verifier_results.append(result)
    return verifier_results


def verify_file(file_path, certs=None):
    ''' Return the `VerificationResult` list of the pdf at `file_path` '''
    MyLogger().my_logger().info(f"verifying pdf signatures of {file_path}")
    with open(file_path, 'rb') as fp:
        pdfdata = fp.read()
    return verify(pdfdata, certs)
