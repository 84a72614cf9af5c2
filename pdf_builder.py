import hashlib
import re
from binascii import hexlify
from datetime import datetime, timezone
from io import BytesIO
from zlib import compress

from pdfminer.pdfdocument import PDFDocument
from pdfminer.pdfpage import PDFPage
from pdfminer.pdfparser import PDFParser
from pdfminer.pdftypes import PDFObjRef, resolve1
from pdfminer.psparser import PSLiteral

from digest_engine import byte_ranges_from_array
from my_config_loader import MyConfigLoader
from my_logger import MyLogger

BYTE_RANGE_PLACEHOLDER = b'[0000000000 0000000000 0000000000 0000000000]'
# room left in the reservation for the CMS structure and signed attributes
CONTAINER_OVERHEAD = 2048
SIGNATURE_FIELD_NAME = 'Signature'
HELVETICA = b'/Type/Font/Subtype/Type1/BaseFont/Helvetica/Encoding/WinAnsiEncoding'
APPEARANCE_STREAM = b'q 0.5 w 0 0 0 RG 0.5 0.5 %.2f %.2f re S Q\nBT\n/F1 8 Tf 10 TL\n4 %.2f Td\n%sET\n'
ANNOTS_ARRAY = re.compile(rb'/Annots\s*\[')
FIELDS_ARRAY = re.compile(rb'/Fields\s*\[')
SIG_FLAGS = re.compile(rb'/SigFlags\s+(\d+)')
INLINE_ACROFORM = re.compile(rb'/AcroForm\s*<<')


# Custom exceptions:
class PDFCreationError(Exception):
    ''' Raised when failing to reserve the signature in the pdf '''
    pass


class AlreadySignedError(PDFCreationError):
    ''' Raised when the pdf already carries a signature '''
    pass


class ContainerTooLarge(Exception):
    ''' Raised when the signature container does not fit its placeholder '''
    pass


class Placeholder:
    '''
        Reserved `/Contents <...>` hex string of a signature dictionary

        `offset` points at the opening `<`, the region ends right after the
        closing `>` and can hold `capacity` container bytes.
    '''

    def __init__(self, offset, capacity):
        self.offset = offset
        self.capacity = capacity
        self.consumed = False

    @property
    def length(self):
        return 2 * self.capacity + 2

    @property
    def end(self):
        return self.offset + self.length


def estimate_container_size(key):
    ''' Return a generous upper bound of the container size for `key` '''
    return 2 * len(key.certificate_der) + key.signature_size + CONTAINER_OVERHEAD


def pdf_string(text):
    ''' Return `text` as a pdf string object '''
    try:
        raw = text.encode('latin-1')
    except UnicodeEncodeError:
        return b'<' + hexlify(b'\xfe\xff' + text.encode('utf-16-be')) + b'>'
    return b'(' + raw.replace(b'\\', b'\\\\').replace(b'(', b'\\(').replace(b')', b'\\)') + b')'


def _stream_text(text):
    raw = text.encode('latin-1', errors='replace')
    return b'(' + raw.replace(b'\\', b'\\\\').replace(b'(', b'\\(').replace(b')', b'\\)') + b')'


class PdfBuilder(object):

    def aligned(self, data, capacity):
        data = data.hex().encode('utf-8')
        return data + b'0' * (2 * capacity - len(data))

    def get_timestamp(self, signing_time):
        dt = signing_time.astimezone().strftime("%Y%m%d%H%M%S%z")
        time_stamp = str(dt)
        return time_stamp[:-2] + '\'' + time_stamp[-2:] + '\''

    def getdata(self, pdfdata1, objid, document):
        ''' Return the raw dictionary body and generation of object `objid` '''
        for xref in document.xrefs:
            try:
                (strmid, index, genno) = xref.get_pos(objid)
            except KeyError:
                continue
            break
        else:
            raise PDFCreationError(f'object {objid} not found')
        if strmid is not None:
            raise PDFCreationError(f'object {objid} lives in a compressed object stream')

        i1 = pdfdata1.find(b'endobj', index)
        data = pdfdata1[index:i1]
        i0 = data.find(b'<<')
        i1 = data.rfind(b'>>')
        if i0 == -1 or i1 <= i0:
            raise PDFCreationError(f'object {objid} is not a dictionary')
        return data[i0 + 2:i1].strip(), genno

    def field_name(self, field):
        name = resolve1(field.get('T', b''))
        if isinstance(name, bytes):
            if name.startswith(b'\xfe\xff'):
                return name[2:].decode('utf-16-be', errors='replace')
            return name.decode('latin-1')
        return str(name)

    def iter_fields(self, document):
        ''' Yield every field dictionary of the AcroForm of `document`, kids included '''
        acroform = resolve1(document.catalog.get('AcroForm'))
        if not isinstance(acroform, dict):
            return
        pending = list(resolve1(acroform.get('Fields')) or [])
        seen = set()
        while pending:
            ref = pending.pop(0)
            if isinstance(ref, PDFObjRef):
                if ref.objid in seen:
                    continue
                seen.add(ref.objid)
            field = resolve1(ref)
            if not isinstance(field, dict):
                continue
            yield field
            pending.extend(resolve1(field.get('Kids')) or [])

    def signature_fields(self, document):
        ''' Return the (name, field) pairs of the signed signature fields of `document` '''
        fields = []
        for field in self.iter_fields(document):
            field_type = field.get('FT')
            if isinstance(field_type, PSLiteral) and field_type.name == 'Sig' \
                    and field.get('V') is not None:
                fields.append((self.field_name(field), field))
        return fields

    def get_signature_names(self, document):
        ''' Return the names of the signed signature fields of `document` '''
        return [name for name, _ in self.signature_fields(document)]

    def get_new_field_name(self, document):
        names = {self.field_name(field) for field in self.iter_fields(document)}
        number = 1
        while f'{SIGNATURE_FIELD_NAME}{number}' in names:
            number += 1
        return f'{SIGNATURE_FIELD_NAME}{number}'

    def get_page(self, document, page_pos):
        pages = list(PDFPage.create_pages(document))
        if not pages:
            raise PDFCreationError('document has no pages')
        if str(page_pos) == 'n':
            return pages[-1]
        try:
            index = int(page_pos) - 1
            if index < 0:
                raise IndexError(page_pos)
            return pages[index]
        except (ValueError, IndexError):
            MyLogger().my_logger().error('page not found...take the latest')
            return pages[-1]

    def get_rect_array(self, sig_attributes):
        if sig_attributes['visibility'] != 'visible':
            return [0, 0, 0, 0]
        x, y, width, height = sig_attributes['position']['rect']
        return [x, y, x + width, y + height]

    def add_annotation(self, pagedata, annot_ref):
        match = ANNOTS_ARRAY.search(pagedata)
        if match:
            return pagedata[:match.end()] + annot_ref + b' ' + pagedata[match.end():]
        if b'/Annots' in pagedata:
            raise PDFCreationError('indirect /Annots arrays are not supported')
        return b'/Annots[' + annot_ref + b']' + pagedata

    def add_field(self, formdata, field_ref):
        ''' Return the AcroForm body `formdata` with `field_ref` appended to its /Fields '''
        match = FIELDS_ARRAY.search(formdata)
        if match:
            formdata = formdata[:match.end()] + field_ref + b' ' + formdata[match.end():]
        elif b'/Fields' in formdata:
            raise PDFCreationError('indirect /Fields arrays are not supported')
        else:
            formdata = b'/Fields[' + field_ref + b']' + formdata

        match = SIG_FLAGS.search(formdata)
        if match:
            flags = int(match.group(1)) | 3
            return formdata[:match.start()] + b'/SigFlags %d' % flags + formdata[match.end():]
        return formdata + b'/SigFlags 3'

    def dict_end(self, data, start):
        ''' Return the offset right after the dictionary opening at `start` '''
        depth = 0
        i = start
        while i < len(data):
            if data.startswith(b'<<', i):
                depth += 1
                i += 2
            elif data.startswith(b'>>', i):
                depth -= 1
                i += 2
                if depth == 0:
                    return i
            elif data[i:i + 1] == b'<':
                i = data.find(b'>', i)
                if i == -1:
                    break
                i += 1
            elif data[i:i + 1] == b'(':
                i = self.string_end(data, i)
            else:
                i += 1
        raise PDFCreationError('unterminated dictionary')

    def string_end(self, data, start):
        depth = 0
        i = start
        while i < len(data):
            char = data[i:i + 1]
            if char == b'\\':
                i += 2
                continue
            if char == b'(':
                depth += 1
            elif char == b')':
                depth -= 1
                if depth == 0:
                    return i + 1
            i += 1
        raise PDFCreationError('unterminated string')

    def make_form_objs(self, document, pdfdata1, root, rootgen, rootdata, widget, no):
        '''
            Return the objects registering the widget `widget` in the AcroForm

            A missing AcroForm is created as object `no`, an existing one
            (indirect or inline in the catalog) gets the widget appended to
            its /Fields.
        '''
        field_ref = b'%d 0 R' % widget
        acroform = document.catalog.get('AcroForm')
        if acroform is None:
            return [
                (root, rootgen, self.makeobj(root, b'/AcroForm %d 0 R' % no + rootdata, rootgen)),
                (no, 0, self.makeobj(no, b'/Fields[' + field_ref + b']/SigFlags 3')),
            ]

        if isinstance(acroform, PDFObjRef):
            formdata, formgen = self.getdata(pdfdata1, acroform.objid, document)
            MyLogger().my_logger().info(f'adding the signature field to AcroForm {acroform.objid}')
            return [(acroform.objid, formgen,
                     self.makeobj(acroform.objid, self.add_field(formdata, field_ref), formgen))]

        match = INLINE_ACROFORM.search(rootdata)
        if not match:
            raise PDFCreationError('AcroForm dictionary not found in the catalog')
        start = match.end() - 2
        end = self.dict_end(rootdata, start)
        rootdata = rootdata[:start + 2] + self.add_field(rootdata[start + 2:end - 2], field_ref) \
            + rootdata[end - 2:]
        return [(root, rootgen, self.makeobj(root, rootdata, rootgen))]

    def makeobj(self, no, data, gen=0):
        return (b'%d %d obj\n<<' % (no, gen)) + data + b'>>\nendobj\n'

    def makeobj_stream(self, no, data, stream):
        return (b'%d 0 obj\n<<' % no) + data + b'>>stream\n' + stream + b'\nendstream\nendobj\n'

    def make_appearance(self, udct, rect):
        width = rect[2] - rect[0]
        height = rect[3] - rect[1]
        if width <= 0 or height <= 0:
            return compress(b''), b''
        lines = [
            'Digitally signed by ' + udct['name'],
            'Reason: ' + udct['reason'],
            'Location: ' + udct['location'],
            'Date: ' + udct['signing_time'].strftime('%Y-%m-%d %H:%M:%S %Z'),
        ]
        text = b''.join(b'%s Tj T*\n' % _stream_text(line) for line in lines if line)
        return compress(APPEARANCE_STREAM % (width - 1, height - 1, height - 12, text)), \
            b'/Font<</F1 %d 0 R>>'

    def make_sig_objs(self, udct, no, page, pagegen, pagedata, rect, zeros):
        '''
            Return the (objid, genno, bytes) objects of the signature and its prefix

            The widget is object `no`, followed by its appearance stream,
            the signature dictionary and, when visible, the font.
        '''
        stream, font_resource = self.make_appearance(udct, rect)
        sig_prefix = b'/Type/Sig/Filter/Adobe.PPKLite/SubFilter/%s/Name%s/Reason%s/Location%s/M(D:%s)/ByteRange %s/Contents <' % (
            udct['subfilter'].encode(), pdf_string(udct['name']), pdf_string(udct['reason']),
            pdf_string(udct['location']), self.get_timestamp(udct['signing_time']).encode(),
            BYTE_RANGE_PLACEHOLDER)
        objs = [
            (page, pagegen, self.makeobj(page, self.add_annotation(pagedata, b'%d 0 R' % no), pagegen)),
            (no + 0, 0, self.makeobj(no + 0,
                b'/Type/Annot/Subtype/Widget/FT/Sig/F 132/T%s/V %d 0 R/P %d %d R/Rect[%.2f %.2f %.2f %.2f]/AP<</N %d 0 R>>' % (
                    pdf_string(udct['field_name']), no + 2, page, pagegen,
                    rect[0], rect[1], rect[2], rect[3], no + 1))),
            (no + 1, 0, self.makeobj_stream(no + 1,
                b'/Type/XObject/Subtype/Form/FormType 1/Matrix [1 0 0 1 0 0]/BBox[0 0 %.2f %.2f]/Resources<<%s>>/Filter/FlateDecode/Length %d' % (
                    rect[2] - rect[0], rect[3] - rect[1],
                    font_resource % (no + 3) if font_resource else b'', len(stream)),
                stream)),
            (no + 2, 0, self.makeobj(no + 2, sig_prefix + zeros + b'>')),
        ]
        if font_resource:
            objs.append((no + 3, 0, self.makeobj(no + 3, HELVETICA)))
        return objs, sig_prefix

    def make_xref(self, offsets):
        ''' Return a cross-reference section for {objid: (offset, genno)} '''
        xref = b'xref\n'
        objids = sorted(offsets)
        start = 0
        while start < len(objids):
            end = start
            while end + 1 < len(objids) and objids[end + 1] == objids[end] + 1:
                end += 1
            xref += b'%d %d\n' % (objids[start], end - start + 1)
            for objid in objids[start:end + 1]:
                xref += b'%010d %05d n \n' % offsets[objid]
            start = end + 1
        return xref

    def make_trailer(self, trailer, pdfdata1, prev, root, size, startxref):
        info = trailer.get('Info')
        info = b'/Info %d 0 R' % info.objid if isinstance(info, PDFObjRef) else b''
        file_id = resolve1(trailer.get('ID'))
        if file_id and len(file_id) == 2:
            ids = [resolve1(value) for value in file_id]
        else:
            ids = [hashlib.md5(pdfdata1).digest()] * 2
        return b'trailer\n<<%s/ID [<%s><%s>]/Prev %d/Root %d 0 R/Size %d>>\nstartxref\n%d\n%%%%EOF\n' % (
            info, hexlify(ids[0]), hexlify(ids[1]), prev, root, size, startxref)

    def reserve(self, document, max_container_size, sig_attributes=None):
        '''
            Append an incremental update holding an empty signature to `document`

            Params:
                document: bytearray with the pdf, extended in place
                max_container_size: container bytes the placeholder must hold
                sig_attributes: name, reason, location, signing_time,
                    visibility, position and subfilter of the signature
                    (missing entries come from the pdf configuration)

            Returns:
                the Placeholder and the ByteRange list covering the rest
        '''
        udct = dict(MyConfigLoader().get_pdf_config())
        udct.update(sig_attributes or {})
        udct.setdefault('name', '')
        udct.setdefault('signing_time', datetime.now(timezone.utc))

        pdfdata1 = bytes(document)
        MyLogger().my_logger().info('get datas from pdf')
        try:
            parser = PDFParser(BytesIO(pdfdata1))
            pdf = PDFDocument(parser, fallback=False)
            prev = pdf.find_xref(parser)
            trailer = pdf.xrefs[0].trailer
            root = trailer['Root'].objid
            size = resolve1(trailer['Size'])
            signatures = self.get_signature_names(pdf)
            udct['field_name'] = self.get_new_field_name(pdf)
            page = self.get_page(pdf, udct['position'].get('page', '1')).pageid
        except PDFCreationError:
            raise
        except Exception as e:
            raise PDFCreationError('Exception on reading pdf') from e

        if signatures:
            raise AlreadySignedError(f'pdf already signed by {", ".join(signatures)}')

        rootdata, rootgen = self.getdata(pdfdata1, root, pdf)
        pagedata, pagegen = self.getdata(pdfdata1, page, pdf)
        rect = self.get_rect_array(udct)
        zeros = b'0' * (2 * max_container_size)

        MyLogger().my_logger().info(f'visibility is {udct["visibility"]}')
        no = size
        objs, sig_prefix = self.make_sig_objs(udct, no, page, pagegen, pagedata, rect, zeros)
        objs.extend(self.make_form_objs(
            pdf, pdfdata1, root, rootgen, rootdata, no, max(objid for objid, _, _ in objs) + 1))

        startxref = len(pdfdata1)
        pdfdata2 = b'' if pdfdata1.endswith(b'\n') else b'\n'
        offsets = {}
        for objid, genno, obj in objs:
            offsets[objid] = (startxref + len(pdfdata2), genno)
            pdfdata2 += obj
        new_size = max(size, max(offsets) + 1)
        xref_offset = startxref + len(pdfdata2)
        pdfdata2 += self.make_xref(offsets)
        pdfdata2 += self.make_trailer(trailer, pdfdata1, prev, root, new_size, xref_offset)

        sig_offset = offsets[no + 2][0]
        placeholder = Placeholder(
            sig_offset + len(b'%d 0 obj\n<<' % (no + 2)) + len(sig_prefix) - 1,
            max_container_size)
        br = [0, placeholder.offset, placeholder.end, startxref + len(pdfdata2) - placeholder.end]
        brfrom = pdfdata2.find(BYTE_RANGE_PLACEHOLDER, sig_offset - startxref)
        brto = b'[%010d %010d %010d %010d]' % tuple(br)
        pdfdata2 = pdfdata2[:brfrom] + brto + pdfdata2[brfrom + len(brto):]

        document.extend(pdfdata2)
        MyLogger().my_logger().info(
            f'reserved {max_container_size} bytes for the signature at offset {placeholder.offset}')
        return placeholder, byte_ranges_from_array(br)

    def fill(self, document, placeholder, container_bytes):
        '''
            Write `container_bytes` into the reserved placeholder of `document`

            The remaining room is padded with zero digits so the document
            length and every offset stay unchanged.
        '''
        if placeholder.consumed:
            raise PDFCreationError('placeholder already filled')
        if len(container_bytes) > placeholder.capacity:
            raise ContainerTooLarge(
                f'signature container of {len(container_bytes)} bytes exceeds the '
                f'{placeholder.capacity} bytes reserved, retry with a larger placeholder')
        if document[placeholder.offset:placeholder.offset + 1] != b'<' \
                or document[placeholder.end - 1:placeholder.end] != b'>':
            raise PDFCreationError('placeholder not found at the reserved offset')

        document[placeholder.offset + 1:placeholder.end - 1] = self.aligned(
            container_bytes, placeholder.capacity)
        placeholder.consumed = True
        MyLogger().my_logger().info('placeholder filled')
