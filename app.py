from os import path

import click
from cryptography import x509

import console_output_util
from console_output_util import ok_print, err_print, dbg_print, result_print
from digest_engine import DigestAlgorithm, UnsupportedAlgorithm
from key_provider import KeyPolicy, Pkcs12KeyProvider, SigningError, UnsupportedKeyType
from my_config_loader import MyConfigLoader
from my_logger import MyLogger
from pdf_builder import ContainerTooLarge, PDFCreationError
from pdfsig_lib import OutputPathError, PdfSigner, PdfVerificationError
from signature_util import Pkcs11KeyProvider, SmartCardConnectionError
from verify import verify_file


####################################################################
#       CONFIGURATION                                              #
####################################################################
PASSPHRASE_ENV_VAR = "PDFSIG_PASSPHRASE"
# errors reported without a traceback
SIGNING_ERRORS = (OSError, ContainerTooLarge, PDFCreationError, SigningError, UnsupportedKeyType,
                  UnsupportedAlgorithm, OutputPathError, PdfVerificationError, SmartCardConnectionError)
####################################################################


def load_trusted_certificate(file_path):
    ''' Return the PEM or DER certificate stored at `file_path` '''
    with open(file_path, 'rb') as cert_file:
        data = cert_file.read()
    if b'-----BEGIN' in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


@click.group()
@click.option('--verbose', help='Run in verbose mode', default=False, is_flag=True)
def cli(verbose):
    console_output_util.dbgON = verbose
    if verbose:
        MyLogger().my_logger().setLevel('DEBUG')


@cli.command(name='keygen', help='create a self-signed signing certificate')
@click.argument('pfx', type=click.Path(dir_okay=False))
@click.option('--subject', help='certificate subject (RFC 4514)',
              default=lambda: MyConfigLoader().get_signer_config()["subject"])
@click.option('--passphrase', envvar=PASSPHRASE_ENV_VAR, prompt=True, hide_input=True,
              confirmation_prompt=True, help='passphrase protecting the bundle')
@click.option('--force', is_flag=True, default=False, help='overwrite an existing bundle')
def keygen(pfx, subject, passphrase, force):
    if path.exists(pfx) and not force:
        raise click.ClickException(f"{pfx} already exists, use --force to replace it")
    config = MyConfigLoader().get_signer_config()
    provider = Pkcs12KeyProvider(pfx, passphrase, subject=subject, key_size=config["key_size"],
                                 validity_days=config["validity_days"])
    certificate = provider.generate()
    ok_print(f"certificate {certificate.subject.rfc4514_string()} saved to {pfx}")


@cli.command(name='sign', help='sign a pdf file')
@click.argument('infile', type=click.Path(exists=True, dir_okay=False))
@click.argument('outfile', type=click.Path(dir_okay=False), required=False)
@click.option('--pfx', help='PKCS#12 key bundle',
              default=lambda: MyConfigLoader().get_signer_config()["pfx_path"])
@click.option('--passphrase', envvar=PASSPHRASE_ENV_VAR, help='passphrase of the key bundle')
@click.option('--no-generate', is_flag=True, default=False,
              help='fail instead of creating a missing key bundle')
@click.option('--pkcs11-pin', help='sign with the smart card unlocked by this pin')
@click.option('--driver-folder', type=click.Path(file_okay=False),
              help='folder holding the PKCS#11 drivers')
@click.option('--visible/--invisible', default=None, help='signature widget visibility')
@click.option('--page', help='page of the signature widget (1-based, n for the last)')
@click.option('--reason', help='reason recorded in the signature')
@click.option('--location', help='location recorded in the signature')
@click.option('--digest-algorithm', type=click.Choice([a.hash_name for a in DigestAlgorithm]),
              help='digest algorithm of the signature')
@click.option('--placeholder-size', type=click.IntRange(min=1),
              help='bytes reserved for the signature container')
def sign(infile, outfile, pfx, passphrase, no_generate, pkcs11_pin, driver_folder,
         visible, page, reason, location, digest_algorithm, placeholder_size):
    pdf_config = MyConfigLoader().get_pdf_config()
    sig_attributes = {}
    if visible is not None:
        sig_attributes['visibility'] = 'visible' if visible else 'invisible'
    if page is not None:
        sig_attributes['position'] = dict(pdf_config['position'], page=page)
    if reason is not None:
        sig_attributes['reason'] = reason
    if location is not None:
        sig_attributes['location'] = location

    if pkcs11_pin is not None:
        key_provider = Pkcs11KeyProvider(pkcs11_pin, driver_folder)
    else:
        if passphrase is None:
            passphrase = click.prompt('Passphrase', hide_input=True)
        config = MyConfigLoader().get_signer_config()
        policy = KeyPolicy.LOAD if no_generate else KeyPolicy.LOAD_OR_GENERATE
        key_provider = Pkcs12KeyProvider(
            pfx, passphrase, policy, subject=config["subject"],
            key_size=config["key_size"], validity_days=config["validity_days"])

    dbg_print("signature attributes", sig_attributes)
    signer = PdfSigner(key_provider, sig_attributes, digest_algorithm, placeholder_size)
    try:
        signed_file_path = signer.sign_pdf(infile, outfile)
    except SIGNING_ERRORS as e:
        err_print(f"{type(e).__name__}: {e}")
        raise click.exceptions.Exit(1)
    ok_print(f"PDF signed successfully: {signed_file_path}")


@cli.command(name='verify', help='verify the signatures of a pdf file')
@click.argument('infile', type=click.Path(exists=True, dir_okay=False))
@click.option('--trusted', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='trusted certificate (PEM or DER), may be repeated')
def verify(infile, trusted):
    certs = [load_trusted_certificate(cert) for cert in trusted] if trusted else None
    results = verify_file(infile, certs)
    if not results:
        err_print(f"no signatures found in {infile}")
        raise click.exceptions.Exit(1)

    for key, res in enumerate(results, start=1):
        result_print(key, res)

    if not all(res.valid for res in results):
        raise click.exceptions.Exit(1)


if __name__ == "__main__":
    cli()
