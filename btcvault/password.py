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

import hashlib
import hmac
import logging
import secrets

from dataclasses	import dataclass
from typing		import Optional, Union

from .defaults		import PBKDF2_ITERATIONS, SALT_BYTES, KEY_BYTES
from .errors		import StorageCorrupt
from .util		import b64_encode, b64_decode

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )


def pbkdf2(
    password: Union[str,bytes],
    salt: bytes,
    iterations: int,
    length: int			= KEY_BYTES,
) -> bytes:
    """PBKDF2-HMAC-SHA256 of the UTF-8 password."""
    if isinstance( password, str ):
        password		= password.encode( 'utf-8' )
    assert iterations > 0, \
        f"PBKDF2 iterations must be positive, not {iterations}"
    return hashlib.pbkdf2_hmac( 'sha256', password, salt, iterations, length )


@dataclass( frozen=True )
class PasswordRecord:
    """One identity's stored password verifier: base64(salt):base64(hash):iterations"""
    salt: bytes
    hash: bytes
    iterations: int

    def encode( self ) -> str:
        return f"{b64_encode( self.salt )}:{b64_encode( self.hash )}:{self.iterations}"

    @classmethod
    def decode( cls, text: str ) -> PasswordRecord:
        """Raises StorageCorrupt for a malformed record; never for a wrong password."""
        parts			= ( text or '' ).split( ':' )
        if len( parts ) != 3:
            raise StorageCorrupt( f"Password record has {len( parts )} fields; expected 3" )
        try:
            salt		= b64_decode( parts[0] )
            hashed		= b64_decode( parts[1] )
            iterations		= int( parts[2] )
        except ValueError as exc:
            raise StorageCorrupt( f"Password record is malformed: {exc}" ) from exc
        if not salt or not hashed or iterations < 1:
            raise StorageCorrupt( "Password record has an empty salt or hash, or invalid iterations" )
        return cls( salt=salt, hash=hashed, iterations=iterations )


class PasswordHasher:
    """One-way password verification.  The iteration count of a record is fixed when it is created;
    verification always uses the record's own count.

    """
    def __init__( self, iterations: int = PBKDF2_ITERATIONS, salt_bytes: int = SALT_BYTES ):
        self.iterations		= iterations
        self.salt_bytes		= salt_bytes

    @staticmethod
    def derive( password: Union[str,bytes], salt: bytes, iterations: int ) -> bytes:
        return pbkdf2( password, salt, iterations )

    def create( self, password: Union[str,bytes], iterations: Optional[int] = None ) -> PasswordRecord:
        """A new salted record, using at least iterations (if given) and never fewer than configured."""
        iterations		= max( self.iterations, iterations or 0 )
        salt			= secrets.token_bytes( self.salt_bytes )
        return PasswordRecord( salt=salt, hash=self.derive( password, salt, iterations ), iterations=iterations )

    def verify( self, password: Union[str,bytes], record: PasswordRecord ) -> bool:
        candidate		= self.derive( password, record.salt, record.iterations )
        return hmac.compare_digest( candidate, record.hash )
