from contextlib import contextmanager
from os import listdir, fsdecode, path

from asn1crypto import algos
from cryptography import x509
from PyKCS11 import PyKCS11Lib, PyKCS11Error, Mechanism, LowLevel

from digest_engine import DigestAlgorithm
from key_provider import SigningKeyMaterial
from my_config_loader import MyConfigLoader
from my_logger import MyLogger


####################################################################
#       CONFIGURATION                                              #
####################################################################
# mechanisms hashing and signing on the token
SIGN_MECHANISMS = {
    DigestAlgorithm.SHA256: LowLevel.CKM_SHA256_RSA_PKCS,
    DigestAlgorithm.SHA384: LowLevel.CKM_SHA384_RSA_PKCS,
    DigestAlgorithm.SHA512: LowLevel.CKM_SHA512_RSA_PKCS,
}
####################################################################


# custom exceptions
class SmartCardConnectionError(ConnectionError):
    ''' Raised when something goes wrong with the smart card '''
    pass


class SignatureUtils:

    @staticmethod
    def fetch_smart_card_sessions(driver_folder=None):
        ''' Return a `session` list for the connected smart cards '''

        MyLogger().my_logger().info("loading drivers")
        pkcs11 = PyKCS11Lib()
        driver_loaded = False

        # try with default
        try:
            pkcs11.load()
            driver_loaded = True
        except PyKCS11Error:
            MyLogger().my_logger().warning("no default driver")

        # anyway load known drivers
        if driver_folder and path.isdir(driver_folder):
            for file in listdir(driver_folder):
                try:
                    pkcs11.load(path.join(driver_folder, fsdecode(file)))
                    MyLogger().my_logger().info(f"driver {fsdecode(file)} loaded")
                    driver_loaded = True
                except PyKCS11Error:
                    MyLogger().my_logger().warning(f"driver {fsdecode(file)} NOT loaded")

        # cannot load any driver file
        if not driver_loaded:
            raise SmartCardConnectionError("No driver found")

        sessions = []
        for slot in SignatureUtils._fetch_slots(pkcs11):
            try:
                sessions.append(pkcs11.openSession(slot))
            except PyKCS11Error:
                MyLogger().my_logger().warning(f"can not open session on slot {slot}")

        if not sessions:
            raise SmartCardConnectionError("Can not open any session")

        return sessions

    @staticmethod
    def _fetch_slots(pkcs11_lib):
        ''' Return a `slot list` (connected Smart Cards) '''

        MyLogger().my_logger().info("getting slots")
        try:
            slots = pkcs11_lib.getSlotList(tokenPresent=True)
        except PyKCS11Error as e:
            raise SmartCardConnectionError("No smart card slot found") from e
        if not slots:
            raise SmartCardConnectionError("No smart card slot found")
        return slots

    @staticmethod
    def user_login(sessions, pin):
        '''
            User login on a `session` using `pin`

            Params:
                sessions: smart card session list
                pin: user pin

            Returns:
                the logged in session
        '''

        MyLogger().my_logger().info("user login")
        for session in sessions:
            try:
                session.login(pin)
                return session
            except PyKCS11Error:
                continue

        raise SmartCardConnectionError("Can not login on any sessions provided")

    @staticmethod
    def user_logout(session):
        ''' User logout from a `session` '''

        MyLogger().my_logger().info("user logout")
        try:
            session.logout()
        finally:
            session.closeSession()

    @staticmethod
    def fetch_certificate(session):
        '''
            Return the first smart card certificate backed by a private key

            Params:
                session: smart card session
        '''

        MyLogger().my_logger().info("fetching certificate")
        try:
            certificates = session.findObjects(
                [(LowLevel.CKA_CLASS, LowLevel.CKO_CERTIFICATE)])
        except PyKCS11Error as e:
            raise SmartCardConnectionError("Certificate not found") from e

        for certificate in certificates:
            try:
                SignatureUtils.fetch_private_key(session, certificate)
            except SmartCardConnectionError:
                continue
            return certificate
        raise SmartCardConnectionError("Certificate not found")

    @staticmethod
    def get_certificate_value(session, certificate):
        '''
            Return the value of `certificate`

            Params:
                session: smart card session
                certificate: smart card certificate
        '''

        MyLogger().my_logger().info("fetching certificate value")
        try:
            certificate_value = session.getAttributeValue(
                certificate, [LowLevel.CKA_VALUE])[0]
        except PyKCS11Error as e:
            raise SmartCardConnectionError("Certificate has no valid value") from e

        return bytes(certificate_value)

    @staticmethod
    def fetch_private_key(session, certificate):
        '''
            Return smart card private key reference

            Params:
                session: smart card session
                certificate: certificate connected to the key
        '''

        MyLogger().my_logger().info("fetching private key")
        try:
            # getting the certificate id
            identifier = session.getAttributeValue(
                certificate, [LowLevel.CKA_ID])[0]
            # same as the key id
            priv_keys = session.findObjects([
                (LowLevel.CKA_CLASS, LowLevel.CKO_PRIVATE_KEY),
                (LowLevel.CKA_ID, identifier)])
        except PyKCS11Error as e:
            raise SmartCardConnectionError("Certificate has no valid private key") from e
        if not priv_keys:
            raise SmartCardConnectionError("Certificate has no valid private key")
        return priv_keys[0]

    @staticmethod
    def signature(session, priv_key, content, digest_algorithm, prehashed=False):
        '''
            Sign `content` with `priv_key` reference

            Return:
                signature in bytes

            Params:
                session: smart card session.
                priv_key: reference to the smart card private key.
                content: bytes to hash and sign, or their digest if `prehashed`
                digest_algorithm: DigestAlgorithm of the signature
        '''

        MyLogger().my_logger().info("signing content")
        if prehashed:
            # raw RSA over the DigestInfo the token would otherwise build
            content = algos.DigestInfo({
                'digest_algorithm': {'algorithm': digest_algorithm.hash_name},
                'digest': content,
            }).dump()
            mechanism = Mechanism(LowLevel.CKM_RSA_PKCS, None)
        else:
            mechanism = Mechanism(SIGN_MECHANISMS[digest_algorithm], None)
        try:
            signature = session.sign(priv_key, content, mechanism)
        except PyKCS11Error as e:
            raise SmartCardConnectionError("Failed on sign content") from e

        return bytes(signature)


class Pkcs11KeyProvider:
    '''
        Key material kept on a PKCS#11 token (smart card)

        The private key never leaves the token, signatures are computed
        by the device inside the session opened by `acquire`.
    '''

    def __init__(self, pin, driver_folder=None):
        self._pin = pin
        self.driver_folder = driver_folder or MyConfigLoader().get_smart_card_config()["driver_folder"]

    @contextmanager
    def acquire(self):
        ''' Yield the token `SigningKeyMaterial`, logging out on every exit path '''
        sessions = SignatureUtils.fetch_smart_card_sessions(self.driver_folder)
        session = SignatureUtils.user_login(sessions, self._pin)
        try:
            certificate = SignatureUtils.fetch_certificate(session)
            certificate_value = SignatureUtils.get_certificate_value(session, certificate)
            priv_key = SignatureUtils.fetch_private_key(session, certificate)

            def signer(data, digest_algorithm, prehashed):
                return SignatureUtils.signature(session, priv_key, data, digest_algorithm, prehashed)

            key = SigningKeyMaterial(
                x509.load_der_x509_certificate(certificate_value), signer=signer)
            try:
                yield key
            finally:
                key.release()
        finally:
            SignatureUtils.user_logout(session)
