# *-* coding: utf-8 *-*
import hashlib
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from asn1crypto import cms, algos, core, tsp, x509 as asn1_x509

from digest_engine import DigestAlgorithm, UnsupportedAlgorithm
from my_logger import MyLogger


####################################################################
#       CONFIGURATION                                              #
####################################################################
SIGNATURE_ALGORITHM = 'rsassa_pkcs1v15'
####################################################################


# Custom exceptions:
class MalformedContainer(ValueError):
    ''' Raised when an embedded signature container cannot be decoded '''
    pass


class SignatureContainer(NamedTuple):
    digest_algorithm: DigestAlgorithm
    # None when the signature was made directly over the digest
    digest: Optional[bytes]
    certificate: bytes
    signature: bytes
    signed_attrs: Optional[bytes]
    signing_time: Optional[datetime]
    encoded: bytes


def _signed_attributes(digest_value, cert_value, signing_time):
    hashalgo = digest_value.algorithm.hash_name
    cert_value_digest = hashlib.new(hashalgo, cert_value).digest()
    return cms.CMSAttributes([
        cms.CMSAttribute({
            'type': cms.CMSAttributeType('content_type'),
            'values': ('data',),
        }),
        cms.CMSAttribute({
            'type': cms.CMSAttributeType('message_digest'),
            'values': (digest_value.value,),
        }),
        cms.CMSAttribute({
            'type': cms.CMSAttributeType('signing_time'),
            'values': (cms.Time({'utc_time': core.UTCTime(signing_time)}),)
        }),
        cms.CMSAttribute({
            'type': cms.CMSAttributeType('signing_certificate_v2'),
            'values': (tsp.SigningCertificateV2({
                'certs': (tsp.ESSCertIDv2({
                    'hash_algorithm': algos.DigestAlgorithm({'algorithm': hashalgo}),
                    'cert_hash': cert_value_digest,
                }),),
            }),)
        }),
    ])


def build(digest_value, key, signed_attributes=True, signing_time=None):
    '''
        Return the `SignatureContainer` binding `digest_value` to the signer

        Params:
            digest_value: DigestValue of the protected byte ranges
            key: SigningKeyMaterial of the signer
            signed_attributes: sign a CMS attribute set carrying the digest
                instead of the bare digest
            signing_time: aware datetime recorded in the attributes (default now)
    '''
    key.check_key_type()
    hashalgo = digest_value.algorithm.hash_name
    signing_time = (signing_time or datetime.now(timezone.utc)).replace(microsecond=0)

    cert_value = key.certificate_der
    x509 = asn1_x509.Certificate.load(cert_value)

    signer = {
        'version': 'v1',
        'sid': cms.SignerIdentifier({
            'issuer_and_serial_number': cms.IssuerAndSerialNumber({
                'issuer': x509.issuer,
                'serial_number': x509.serial_number,
            }),
        }),
        'digest_algorithm': algos.DigestAlgorithm({'algorithm': hashalgo}),
        'signature_algorithm': algos.SignedDigestAlgorithm({'algorithm': SIGNATURE_ALGORITHM}),
    }
    if signed_attributes:
        MyLogger().my_logger().info('building signed attributes...')
        attrs = _signed_attributes(digest_value, cert_value, signing_time)
        signer['signed_attrs'] = attrs
        tosign = attrs.dump()
        MyLogger().my_logger().info('signed attributes ready')
    else:
        attrs = None
        tosign = digest_value.value

    MyLogger().my_logger().info('signing...')
    signature = key.sign(tosign, digest_value.algorithm, prehashed=not signed_attributes)
    signer['signature'] = signature

    datas = cms.ContentInfo({
        'content_type': cms.ContentType('signed_data'),
        'content': cms.SignedData({
            'version': 'v1',
            'digest_algorithms': cms.DigestAlgorithms((
                algos.DigestAlgorithm({'algorithm': hashalgo}),
            )),
            'encap_content_info': {
                'content_type': 'data',
            },
            'certificates': [x509],
            'signer_infos': [
                signer,
            ],
        }),
    })

    return SignatureContainer(
        digest_algorithm=digest_value.algorithm,
        digest=digest_value.value,
        certificate=cert_value,
        signature=signature,
        signed_attrs=tosign if attrs is not None else None,
        signing_time=signing_time if attrs is not None else None,
        encoded=datas.dump(),
    )


def _find_attribute(signed_attrs, name):
    for attr in signed_attrs:
        if attr['type'].native == name:
            return attr['values'][0].native
    return None


def _find_certificate(certificates, sid):
    '''Return the certificate designated by `sid`, the first one as fallback'''
    if sid.name == 'issuer_and_serial_number':
        issuer_and_serial = sid.chosen
        for choice in certificates:
            cert = choice.chosen
            if cert.issuer == issuer_and_serial['issuer'] \
                    and cert.serial_number == issuer_and_serial['serial_number'].native:
                return cert
    return certificates[0].chosen


def parse(data):
    '''
        Return the `SignatureContainer` encoded at the start of `data`

        Filler bytes after the encoding are ignored.

        Raises:
            MalformedContainer: truncated or unexpected structure, unknown
                digest or signature algorithm
    '''
    try:
        info = cms.ContentInfo.load(bytes(data))
        if info['content_type'].native != 'signed_data':
            raise MalformedContainer(f"unexpected content type {info['content_type'].native}")
        signed_data = info['content']

        signer_infos = signed_data['signer_infos']
        if len(signer_infos) != 1:
            raise MalformedContainer(f"expected one signer, found {len(signer_infos)}")
        signer_info = signer_infos[0]

        algo_name = signer_info['digest_algorithm']['algorithm'].native
        try:
            digest_algorithm = DigestAlgorithm.from_name(algo_name)
        except UnsupportedAlgorithm as e:
            raise MalformedContainer(str(e)) from e

        signature_algo = signer_info['signature_algorithm'].signature_algo
        if signature_algo != SIGNATURE_ALGORITHM:
            raise MalformedContainer(f"unsupported signature algorithm {signature_algo}")

        certificates = signed_data['certificates']
        if not certificates:
            raise MalformedContainer("no signer certificate")
        certificate = _find_certificate(certificates, signer_info['sid']).dump()

        signed_attrs = signer_info['signed_attrs']
        if signed_attrs:
            # the signature covers the attributes as an explicit SET
            tosign = b'\x31' + signed_attrs.dump()[1:]
            message_digest = _find_attribute(signed_attrs, 'message_digest')
            if message_digest is None:
                raise MalformedContainer("no message digest attribute")
            signing_time = _find_attribute(signed_attrs, 'signing_time')
        else:
            tosign = message_digest = signing_time = None

        return SignatureContainer(
            digest_algorithm=digest_algorithm,
            digest=message_digest,
            certificate=certificate,
            signature=signer_info['signature'].native,
            signed_attrs=tosign,
            signing_time=signing_time,
            encoded=info.dump(),
        )
    except MalformedContainer:
        raise
    except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
        raise MalformedContainer(f"cannot decode signature container: {e}") from e
