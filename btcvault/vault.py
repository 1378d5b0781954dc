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
import threading
import time
import uuid

from typing		import Callable, List, Optional, Sequence, Union

from .api		import derive_wallet_keys, wallet_key
from .bip39		import produce_bip39
from .binder		import bind_config, fingerprint_keys, rebind
from .defaults		import (
    KEY_PASSWORD_HASH, PREFIX_WALLET_SECRETS, PBKDF2_ITERATIONS,
)
from .descriptor	import create_descriptor_record, extract_descriptor, format_descriptor, parse_descriptor, verify_first_address
from .errors		import (
    AuthenticationFailed, DescriptorParseError, LockedOut, PasswordPolicyError, ReferentialViolation,
    Result, SessionInactive, StorageCorrupt, StorageWriteFailed, VaultError, WalletNotFound,
)
from .lockout		import LoginAttemptManager
from .migration		import MigrationEngine, MigrationReport
from .password		import PasswordHasher, PasswordRecord
from .paths		import account_path, with_account_number
from .repository	import KeyRepository, MetadataRepository
from .session		import SessionKeyManager
from .store		import KeyValueStore
from .types		import ScriptType, WalletKey, WalletMetadata

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
The Vault: password-gated access to one main and (optionally) one decoy identity, each with its
own KeyValueStore.  A successful unlock yields a VaultSession, the explicit context object through
which all keys and wallets of that identity are read and written until it is closed.
"""

log				= logging.getLogger( __package__ )

MAIN				= "main"
DECOY				= "decoy"
IDENTITIES			= ( MAIN, DECOY )


class VaultSession:
    """An unlocked identity.  Holds the SessionKeyManager and the repositories built on it; after
    close (or a Vault wipe) every read and write raises SessionInactive.

    """
    def __init__( self, vault: Vault, identity: str, store: KeyValueStore, session: SessionKeyManager ):
        self.vault		= vault
        self.identity		= identity
        self.store		= store
        self.session		= session
        self.lock		= threading.RLock()
        self.metadata		= MetadataRepository( store )
        self.keys		= KeyRepository( store, session, self.metadata )
        self.migration		= MigrationEngine( store, session, self.keys, self.metadata )

    def __repr__( self ):
        return f"{self.__class__.__name__}({self.session!r})"

    def __enter__( self ):
        return self

    def __exit__( self, *exc ):
        self.close()

    @property
    def is_active( self ) -> bool:
        return self.session.is_active

    def require_active( self ):
        if not self.session.is_active:
            raise SessionInactive()

    def close( self ) -> None:
        with self.lock:
            self.session.clear_session()
        self.vault.forget( self )

    def migrate( self ) -> MigrationReport:
        with self.lock:
            self.require_active()
            return self.migration.run_if_needed()

    #
    # Keys
    #
    def add_key(
        self,
        mnemonic: str,
        passphrase: Optional[str]	= None,
        label: Optional[str]		= None,
    ) -> Result:
        """Import a BIP-39 mnemonic as a WalletKey (the passphrase, if any, applied to its seed).  An
        existing key with the same fingerprint is returned instead of a duplicate.  Multisig wallets
        are rebound to the new key.  Raises ValueError for an invalid mnemonic.

        """
        with self.lock:
            self.require_active()
            key			= wallet_key( mnemonic, passphrase=passphrase )
            existing		= self.keys.find_by_fingerprint( key.fingerprint )
            if existing is not None:
                log.info( f"Key with fingerprint {key.fingerprint} already present as {existing.key_id}" )
                return Result.success( existing )
            key.label		= label or self.keys.next_label()
            res			= self.keys.save( key )
            if res.ok:
                self.rebind()
            return res

    def generate_key( self, strength: Optional[int] = None, label: Optional[str] = None ) -> Result:
        return self.add_key( produce_bip39( strength=strength ), label=label )

    def delete_key( self, key_id: str, detach: bool = False ) -> Result:
        """Delete a key.  Refused (ReferentialViolation) while a single-signature wallet uses it, or
        while any multisig wallet does unless detach; detaching rebinds those multisig wallets
        without the key first.

        """
        with self.lock:
            self.require_active()
            referencing		= [ m for m in self.metadata.load_all() if key_id in m.key_ids ]
            if referencing and ( not detach or any( not m.is_multisig for m in referencing )):
                return Result.failure( ReferentialViolation( key_id, [ m.id for m in referencing ] ))
            if referencing:
                remaining	= [ k for k in self.keys.load_all() if k.key_id != key_id ]
                rebind( remaining, self.metadata )
            res			= self.keys.delete( key_id )
            if res.ok:
                self.rebind()
            return res

    def rebind( self ) -> int:
        self.require_active()
        return rebind( self.keys.load_all(), self.metadata )

    #
    # Wallets
    #
    def wallets( self ) -> List[WalletMetadata]:
        self.require_active()
        return self.metadata.load_all()

    def wallet( self, wallet_id: str ) -> Optional[WalletMetadata]:
        self.require_active()
        return self.metadata.load( wallet_id )

    def _append( self, metadata: WalletMetadata ) -> Result:
        res			= self.metadata.save( metadata )
        if not res.ok:
            return res
        order			= self.metadata.load_order()
        if metadata.id not in order:
            self.metadata.save_order( order + [metadata.id] )
        return res

    def create_single_sig_wallet(
        self,
        key: WalletKey,
        name: str,
        script_type: Union[ScriptType,str]	= ScriptType.P2WPKH,
        account: int				= 0,
        testnet: bool				= False,
        has_passphrase: bool			= False,
        passphrase: Optional[str]		= None,
    ) -> Result:
        """A wallet over one key.  If has_passphrase, the key's seed is passphrase-less and the BIP-39
        passphrase must be supplied whenever the wallet is opened; if it is also supplied now, the
        wallet's master fingerprint is that of the passphrase-protected seed.

        """
        with self.lock:
            self.require_active()
            if self.keys.load( key.key_id ) is None:
                res		= self.keys.save( key )
                if not res.ok:
                    return res
            fingerprint		= key.fingerprint
            if has_passphrase and passphrase is not None:
                fingerprint	= wallet_key( key.mnemonic, passphrase=passphrase, key_id=key.key_id ).fingerprint
            metadata		= WalletMetadata(
                id			= str( uuid.uuid4() ),
                name			= name,
                derivation_path		= account_path( ScriptType( script_type ).purpose, account, testnet ),
                master_fingerprint	= fingerprint,
                has_passphrase		= has_passphrase,
                accounts		= [account],
                active_account_number	= account,
                key_ids			= [key.key_id],
            )
            res			= self._append( metadata )
            if res.ok:
                log.info( f"Created {ScriptType( script_type ).value} wallet {metadata.id} over key {key.key_id}" )
            return res

    def create_multisig_wallet( self, name: str, descriptor: str ) -> Result:
        """Import a multisig wallet from a descriptor or BSMS record, binding its cosigners to the
        local keys.  A BSMS verification address must match the derived first address.

        """
        with self.lock:
            self.require_active()
            keys		= self.keys.load_all()
            index		= fingerprint_keys( keys )
            res			= parse_descriptor( descriptor, index.keys(), key_ids=index )
            if not res.ok:
                return res
            config		= res.value
            try:
                verified	= verify_first_address( config, extract_descriptor( descriptor ).first_address )
            except ValueError as exc:
                return Result.failure( DescriptorParseError( f"Cosigner keys cannot derive addresses: {exc}" ))
            if verified is False:
                return Result.failure( DescriptorParseError( "The BSMS first address does not match the descriptor" ))
            config, key_ids	= bind_config( config, keys )
            first_local		= config.local_cosigners[0]
            metadata		= WalletMetadata(
                id			= str( uuid.uuid4() ),
                name			= name,
                derivation_path		= first_local.derivation_path,
                master_fingerprint	= first_local.fingerprint,
                is_multisig		= True,
                multisig_config		= config,
                key_ids			= key_ids,
            )
            res			= self._append( metadata )
            if res.ok:
                log.info( f"Created {config.m}-of-{config.n} multisig wallet {metadata.id}" )
            return res

    def delete_wallet( self, wallet_id: str ) -> Result:
        """Delete a wallet's metadata (and any legacy secrets); its keys are left in place."""
        with self.lock:
            self.require_active()
            return self.metadata.delete( wallet_id )

    def set_order( self, wallet_ids: Sequence[str] ) -> Result:
        self.require_active()
        return self.metadata.save_order( wallet_ids )

    def wallets_referencing_key( self, key_id: str ) -> List[str]:
        self.require_active()
        return self.metadata.wallets_referencing_key( key_id )

    def multisig_wallets_using_fingerprint( self, fingerprint: str ) -> List[WalletMetadata]:
        self.require_active()
        return self.metadata.multisig_wallets_using_fingerprint( fingerprint )

    def wallet_key( self, wallet_id: str ) -> Optional[WalletKey]:
        """The (first) key of a wallet, if held locally and loadable."""
        self.require_active()
        metadata		= self.metadata.load( wallet_id )
        if metadata is None or not metadata.key_ids:
            return None
        return self.keys.load( metadata.key_ids[0] )

    def wallet_keys( self, wallet_id: str, passphrase: Optional[str] = None ) -> Result:
        """The AccountKeys of a single-signature wallet's active account."""
        self.require_active()
        metadata		= self.metadata.load( wallet_id )
        key			= self.wallet_key( wallet_id )
        if metadata is None or key is None or metadata.is_multisig:
            return Result.failure( WalletNotFound( wallet_id, "has no loadable single-signature key" ))
        try:
            return Result.success( derive_wallet_keys( key, metadata, passphrase=passphrase ))
        except ValueError as exc:
            return Result.failure( AuthenticationFailed( str( exc )))

    def export_bsms( self, wallet_id: str ) -> Result:
        self.require_active()
        metadata		= self.metadata.load( wallet_id )
        if metadata is None or not metadata.multisig_config:
            return Result.failure( WalletNotFound( wallet_id, "is not a multisig wallet" ))
        return Result.success( format_descriptor( create_descriptor_record( metadata.multisig_config )))

    #
    # Accounts
    #
    def _update( self, wallet_id: str, change: Callable[[WalletMetadata], WalletMetadata] ) -> Result:
        self.require_active()
        with self.metadata.lock:
            metadata		= self.metadata.load( wallet_id )
            if metadata is None:
                return Result.failure( WalletNotFound( wallet_id ))
            try:
                updated		= change( metadata )
            except ValueError as exc:
                return Result.failure( VaultError( str( exc )))
            return self.metadata.save( updated )

    def add_account( self, wallet_id: str, account: Optional[int] = None, name: Optional[str] = None ) -> Result:
        def change( metadata ):
            if metadata.is_multisig:
                raise ValueError( "Multisig wallets have a single account" )
            number		= max( metadata.accounts ) + 1 if account is None else account
            with_account_number( metadata.derivation_path, number )	# validates the number
            names		= dict( metadata.account_names )
            if name:
                names[number]	= name
            return metadata.evolve(
                accounts		= sorted( set( metadata.accounts ) | { number } ),
                active_account_number	= number,
                account_names		= names,
            )
        return self._update( wallet_id, change )

    def set_active_account( self, wallet_id: str, account: int ) -> Result:
        def change( metadata ):
            if account not in metadata.accounts:
                raise ValueError( f"Wallet {metadata.name!r} has no account {account}" )
            return metadata.evolve( active_account_number=account )
        return self._update( wallet_id, change )

    def rename_account( self, wallet_id: str, account: int, name: str ) -> Result:
        def change( metadata ):
            if account not in metadata.accounts:
                raise ValueError( f"Wallet {metadata.name!r} has no account {account}" )
            names		= dict( metadata.account_names )
            if name:
                names[account]	= name
            else:
                names.pop( account, None )
            return metadata.evolve( account_names=names )
        return self._update( wallet_id, change )


class Vault:
    """Password management, unlock with lockout, password change and wipe, over a main and an
    optional decoy identity's stores.  Failed logins are tracked in attempts_store (by default, the
    main store), shared by both identities.

    """
    def __init__(
        self,
        main_store: KeyValueStore,
        decoy_store: Optional[KeyValueStore]	= None,
        attempts_store: Optional[KeyValueStore]	= None,
        iterations: int				= PBKDF2_ITERATIONS,
        clock: Callable[[], float]		= time.time,
    ):
        self.stores		= { MAIN: main_store }
        if decoy_store is not None:
            self.stores[DECOY]	= decoy_store
        self.attempts_store	= attempts_store or main_store
        self.hasher		= PasswordHasher( iterations=iterations )
        self.attempts		= LoginAttemptManager( self.attempts_store, clock=clock )
        self.lock		= threading.RLock()
        self.sessions		= []

    def record( self, identity: str = MAIN ) -> Optional[PasswordRecord]:
        """The identity's password record; raises StorageCorrupt if it is malformed."""
        store			= self.stores.get( identity )
        text			= store.get( KEY_PASSWORD_HASH ) if store is not None else None
        return PasswordRecord.decode( text ) if text else None

    def has_password( self, identity: str = MAIN ) -> bool:
        store			= self.stores.get( identity )
        return store is not None and store.contains( KEY_PASSWORD_HASH )

    def _verifies( self, password: str, identity: str ) -> bool:
        try:
            record		= self.record( identity )
        except StorageCorrupt as exc:
            log.warning( f"The {identity} password record is corrupt: {exc}" )
            return False
        return record is not None and self.hasher.verify( password, record )

    def set_password( self, password: str, identity: str = MAIN ) -> Result:
        """Establish an identity's password.  An existing password must be changed, not set; the
        decoy password requires a main password, and must differ from it.

        """
        if identity not in self.stores:
            return Result.failure( PasswordPolicyError( f"No {identity} identity store is configured" ))
        if not password:
            return Result.failure( PasswordPolicyError( "The password must not be empty" ))
        if self.has_password( identity ):
            return Result.failure( PasswordPolicyError( f"The {identity} password is already set; change it instead" ))
        if identity == DECOY:
            if not self.has_password( MAIN ):
                return Result.failure( PasswordPolicyError( "Set the main password before the decoy password" ))
            if self._verifies( password, MAIN ):
                return Result.failure( PasswordPolicyError( "The decoy password cannot match the main password" ))
        record			= self.hasher.create( password )
        try:
            self.stores[identity].put( KEY_PASSWORD_HASH, record.encode() )
        except OSError as exc:
            return Result.failure( StorageWriteFailed( str( exc )))
        log.info( f"The {identity} password has been set" )
        return Result.success( identity )

    def remaining_lockout_time( self ) -> int:
        return self.attempts.remaining_lockout_time()

    def unlock( self, password: str, migrate: bool = True ) -> Result:
        """Verify the password against the main, then the decoy identity.  Returns a Result with the
        VaultSession, or AuthenticationFailed (which never reveals which identity was tried) or
        LockedOut.  Legacy data is migrated on each successful unlock.

        """
        with self.lock:
            remaining		= self.attempts.remaining_lockout_time()
            if remaining > 0:
                return Result.failure( LockedOut( remaining ))
            for identity in IDENTITIES:
                if identity not in self.stores or not self._verifies( password, identity ):
                    continue
                record		= self.record( identity )
                self.attempts.reset_attempts()
                session		= SessionKeyManager( iterations=record.iterations )
                session.initialize_session( password, record.salt, record.iterations )
                vault_session	= VaultSession( self, identity, self.stores[identity], session )
                self.sessions.append( vault_session )
                log.info( "Unlocked" )
                break
            else:
                self.attempts.record_failed_attempt()
                return Result.failure( AuthenticationFailed() )
        if migrate:
            try:
                vault_session.migrate()
            except ( OSError, VaultError ) as exc:
                log.warning( f"Migration failed; it will be retried at next unlock: {exc!r}" )
        return Result.success( vault_session )

    def forget( self, vault_session: VaultSession ) -> None:
        with self.lock:
            if vault_session in self.sessions:
                self.sessions.remove( vault_session )

    def change_password( self, vault_session: VaultSession, old: str, new: str ) -> Result:
        """Atomically replace the session identity's password and re-encrypt every secret under the
        new session key.  Everything is re-encrypted in memory first, and committed along with the
        new password record in one put_all.  Only once that commit succeeds does the live session
        adopt the new key; on any failure the old password and key remain in force.

        """
        identity		= vault_session.identity
        store			= vault_session.store
        with vault_session.lock, vault_session.keys.lock, vault_session.metadata.lock:
            vault_session.require_active()
            if not self._verifies( old, identity ):
                return Result.failure( AuthenticationFailed() )
            if not new:
                return Result.failure( PasswordPolicyError( "The password must not be empty" ))
            if any( self._verifies( new, other ) for other in self.stores if other != identity ):
                return Result.failure( PasswordPolicyError( "The main and decoy passwords must differ" ))

            key_ids		= vault_session.keys.key_ids()
            keys		= [ k for k in ( vault_session.keys.load( i ) for i in key_ids ) if k is not None ]
            if len( keys ) != len( key_ids ):
                return Result.failure( StorageCorrupt(
                    f"{len( key_ids ) - len( keys )} of {len( key_ids )} keys cannot be decrypted; refusing to change the password" ))
            legacy		= {}
            try:
                for wallet_id in vault_session.metadata.wallet_ids():
                    blob	= store.get( PREFIX_WALLET_SECRETS + wallet_id )
                    if blob is not None:
                        legacy[PREFIX_WALLET_SECRETS + wallet_id] = vault_session.session.decrypt( blob )
            except StorageCorrupt as exc:
                return Result.failure( StorageCorrupt( f"Legacy secrets cannot be decrypted; refusing to change the password: {exc}" ))

            # Never weaken the existing key stretching
            current		= self.record( identity )
            record		= self.hasher.create( new, iterations=current.iterations if current else None )
            session		= SessionKeyManager( iterations=record.iterations )
            session.initialize_session( new, record.salt, record.iterations )
            try:
                entries		= { KEY_PASSWORD_HASH: record.encode() }
                for key in keys:
                    entries.update( vault_session.keys.encrypt( key, session=session ))
                for name, plaintext in legacy.items():
                    entries[name] = session.encrypt( plaintext )
                store.put_all( entries )
            except ( OSError, VaultError ) as exc:
                session.clear_session()
                log.warning( f"Password change failed; the old password remains in force: {exc}" )
                return Result.failure( exc if isinstance( exc, VaultError ) else StorageWriteFailed( str( exc )))
            session.transfer_to( vault_session.session )
        log.info( f"The {identity} password has been changed ({len( keys )} keys re-encrypted)" )
        return Result.success( identity )

    def wipe( self ) -> None:
        """Close every session, and erase all identities' data and the login attempt state."""
        with self.lock:
            for vault_session in list( self.sessions ):
                vault_session.session.clear_session()
            self.sessions.clear()
            stores		= list( self.stores.values() )
            if self.attempts_store not in stores:
                stores.append( self.attempts_store )
            for store in stores:
                store.clear()
        log.warning( "All vault data wiped" )
