from cryptography.exceptions import InvalidSignature
from fido2.cose import CoseKey


class KeyChecker(object):
    """Remembers credential public keys and verifies assertion signatures."""

    def __init__(self):
        self.public_keys = {}

    def register_credential(self, credential_id, public_key):
        self.public_keys[bytes(credential_id)] = public_key

    def knows(self, credential_id):
        return bytes(credential_id) in self.public_keys

    def check_signature(self, credential_id, auth_data, client_data_hash, signature):
        public_key = self.public_keys.get(bytes(credential_id))
        if public_key is None:
            return False
        if not isinstance(public_key, CoseKey):
            public_key = CoseKey.parse(public_key)
        try:
            public_key.verify(bytes(auth_data) + client_data_hash, signature)
        except InvalidSignature:
            return False
        return True


class CounterChecker(object):
    """
    Signature counters have to increase with every use of a credential.
    Authenticators without counter support always report 0, which is fine
    as long as they never report anything else.
    """

    def __init__(self):
        self.counters = {}

    def register_counter(self, credential_id, counter):
        credential_id = bytes(credential_id)
        last = self.counters.get(credential_id)
        self.counters[credential_id] = counter
        if last is None:
            return True
        if last == 0 and counter == 0:
            return True
        return counter > last
