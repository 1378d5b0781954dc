#
# Python-btcvault -- Bitcoin Key Custody and Multisig Reconciliation
#
# Copyright (c) 2022, Dominion Research & Development Corp.
#
# Python-btcvault is free software: you can redistribute it and/or modify it under
# the terms of the GNU General Public License as published by the Free Software
# Foundation, either version 3 of the License, or (at your option) any later
# version.  It is also available under alternative (eg. Commercial) licenses, at
# your option.  See the LICENSE file at the top of the source tree.
#
# Python-btcvault is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE. See the GNU General Public License for more details.
#
from __future__          import annotations

import logging
import secrets
import threading

from typing		import Optional, Union

from Crypto.Cipher	import AES
from Crypto.Hash	import SHA256
from Crypto.Protocol.KDF import HKDF

from .defaults		import (
    PBKDF2_ITERATIONS, KEY_BYTES, HKDF_INFO, GCM_NONCE_BYTES, GCM_TAG_BYTES,
)
from .errors		import SessionInactive, CiphertextMalformed, CiphertextInvalid
from .password		import pbkdf2
from .util		import b64_encode, b64_decode

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )


def derive_session_key(
    password: Union[str,bytes],
    salt: bytes,
    iterations: int		= PBKDF2_ITERATIONS,
) -> bytearray:
    """PBKDF2-HMAC-SHA256( password, salt ) --> HKDF-SHA256( zero salt, info "wallet-encryption" ).
    Returned as a bytearray, so that the holder can zero it.

    """
    master			= pbkdf2( password, salt, iterations )
    return bytearray( HKDF( master, KEY_BYTES, bytes( SHA256.digest_size ), SHA256, context=HKDF_INFO ))


class SessionKeyManager:
    """Holds one AES-256-GCM session key between initialize_session and clear_session.

    States: Inactive (initially, and after clear_session) and Active.  The password is not
    verified here; deriving from a wrong password simply produces a key that decrypts nothing.
    Every encrypt/decrypt holds the lock for its duration, so a concurrent clear_session is
    observed either before (the operation completes) or after (SessionInactive is raised).

    """
    def __init__( self, iterations: int = PBKDF2_ITERATIONS ):
        self.iterations		= iterations
        self._lock		= threading.RLock()
        self._key		= None		# bytearray, when Active

    def __repr__( self ):
        return f"{self.__class__.__name__}({'Active' if self.is_active else 'Inactive'})"

    @property
    def is_active( self ) -> bool:
        return self._key is not None

    def initialize_session( self, password: Union[str,bytes], salt: bytes, iterations: Optional[int] = None ) -> None:
        key			= derive_session_key( password, salt, iterations or self.iterations )
        self.install( key )
        log.info( "Session key initialized" )

    def install( self, key: bytearray ) -> None:
        """Adopt the supplied key (replacing and zeroing any current key).  The caller's key buffer is
        taken over, and should not be used further.

        """
        assert len( key ) == KEY_BYTES, \
            f"Session key must be {KEY_BYTES} bytes"
        with self._lock:
            self._zero()
            self._key		= key if isinstance( key, bytearray ) else bytearray( key )

    def transfer_to( self, other: SessionKeyManager ) -> None:
        """Move this session's key into other, leaving this session Inactive."""
        with self._lock:
            if self._key is None:
                raise SessionInactive()
            key, self._key	= self._key, None
        other.install( key )

    def _zero( self ):
        if self._key is not None:
            for i in range( len( self._key )):
                self._key[i]	= 0
            self._key		= None

    def clear_session( self ) -> None:
        """Zero the key and return to Inactive.  Idempotent."""
        with self._lock:
            if self._key is not None:
                log.info( "Session key cleared" )
            self._zero()

    def encrypt( self, plaintext: Union[str,bytes] ) -> str:
        """AES-256-GCM with a fresh random nonce; returns base64( nonce || ciphertext || tag )."""
        if isinstance( plaintext, str ):
            plaintext		= plaintext.encode( 'utf-8' )
        with self._lock:
            if self._key is None:
                raise SessionInactive()
            nonce		= secrets.token_bytes( GCM_NONCE_BYTES )
            cipher		= AES.new( bytes( self._key ), AES.MODE_GCM, nonce=nonce, mac_len=GCM_TAG_BYTES )
            ciphertext, tag	= cipher.encrypt_and_digest( plaintext )
        return b64_encode( nonce + ciphertext + tag )

    def decrypt( self, encoded: str ) -> bytes:
        """Inverse of encrypt.  Raises CiphertextMalformed if the input cannot be an encrypt output,
        and CiphertextInvalid if it fails authentication under this session key.

        """
        try:
            blob		= b64_decode( encoded )
        except ValueError as exc:
            raise CiphertextMalformed( str( exc )) from exc
        if len( blob ) < GCM_NONCE_BYTES + GCM_TAG_BYTES:
            raise CiphertextMalformed( f"Ciphertext of {len( blob )} bytes is too short" )
        nonce, ciphertext, tag	= blob[:GCM_NONCE_BYTES], blob[GCM_NONCE_BYTES:-GCM_TAG_BYTES], blob[-GCM_TAG_BYTES:]
        with self._lock:
            if self._key is None:
                raise SessionInactive()
            cipher		= AES.new( bytes( self._key ), AES.MODE_GCM, nonce=nonce, mac_len=GCM_TAG_BYTES )
            try:
                return cipher.decrypt_and_verify( ciphertext, tag )
            except ValueError as exc:
                raise CiphertextInvalid( f"Ciphertext failed authentication: {exc}" ) from exc
