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

from collections	import namedtuple
from typing		import Optional, Sequence

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
The btcvault error taxonomy.

Expected outcomes (wrong password, lockout, a referenced key, an unparseable descriptor) are
returned to the caller inside a Result; they are Exceptions only so that Result.unwrap (and the
occasional precondition failure, eg. SessionInactive) can raise them.
"""


class VaultError( Exception ):
    """Base of all btcvault errors."""


class AuthenticationFailed( VaultError ):
    """Wrong password.  Deliberately never says which identity (main or decoy) was tried."""
    def __init__( self, message: str = "Incorrect password" ):
        super().__init__( message )


class LockedOut( VaultError ):
    def __init__( self, remaining: int ):
        self.remaining		= remaining		# milliseconds
        super().__init__( f"Too many failed attempts; locked out for {remaining // 1000} more seconds" )


class SessionInactive( VaultError ):
    def __init__( self, message: str = "No active session; unlock first" ):
        super().__init__( message )


class StorageCorrupt( VaultError ):
    """A record expected to be well-formed could not be decrypted or deserialized."""


class CiphertextMalformed( StorageCorrupt ):
    """The ciphertext is not valid base64, or is too short to hold a nonce and tag."""


class CiphertextInvalid( StorageCorrupt ):
    """The AEAD tag did not verify; wrong session key, or tampered ciphertext."""


class StorageWriteFailed( VaultError ):
    """The KeyValueStore refused or failed to commit; nothing was written."""


class ReferentialViolation( VaultError ):
    def __init__( self, key_id: str, wallet_ids: Sequence[str] ):
        self.key_id		= key_id
        self.wallet_ids		= list( wallet_ids )
        super().__init__( f"Key {key_id} is still used by wallet(s) {', '.join( self.wallet_ids )}; delete or detach them first" )


class DescriptorParseError( VaultError ):
    def __init__( self, reason: str ):
        self.reason		= reason
        super().__init__( reason )


class MigrationAborted( VaultError ):
    def __init__( self, wallet_id: str, reason: str ):
        self.wallet_id		= wallet_id
        self.reason		= reason
        super().__init__( f"Migration of wallet {wallet_id} aborted; legacy data retained: {reason}" )


class WalletNotFound( VaultError ):
    def __init__( self, wallet_id: str, reason: str = "not found" ):
        self.wallet_id		= wallet_id
        super().__init__( f"Wallet {wallet_id} {reason}" )


class PasswordPolicyError( VaultError ):
    """A proposed password is unacceptable, eg. empty, or a decoy password equal to the main one."""


class Result( namedtuple( 'Result', ('value', 'error') ) ):
    """The outcome of a fallible operation: either a value, or one of the VaultError kinds.

        res = keys.save( key )
        if not res.ok:
            log.warning( f"Save failed: {res.error}" )

    """
    __slots__			= ()

    @classmethod
    def success( cls, value=None ) -> Result:
        return cls( value, None )

    @classmethod
    def failure( cls, error: VaultError ) -> Result:
        assert isinstance( error, VaultError ), \
            f"Result failures must be a VaultError, not {error!r}"
        return cls( None, error )

    @property
    def ok( self ) -> bool:
        return self.error is None

    def unwrap( self ):
        """Return the value, or raise the error."""
        if self.error is not None:
            raise self.error
        return self.value

    def value_or( self, default: Optional[object] = None ):
        return default if self.error is not None else self.value
