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

import hmac
import json
import logging
import uuid

from dataclasses	import dataclass, field
from typing		import Dict, List, Optional

from mnemonic		import Mnemonic

from .bip32		import master_fingerprint
from .defaults		import (
    KEY_MIGRATION_VERSION, MIGRATION_VERSION_INITIAL, MIGRATION_VERSION_TARGET, PREFIX_WALLET_SECRETS,
)
from .errors		import MigrationAborted, SessionInactive, StorageCorrupt
from .repository	import KeyRepository, MetadataRepository
from .session		import SessionKeyManager
from .store		import KeyValueStore
from .types		import WalletKey, WalletMetadata

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
One-time migration from "one encrypted secrets blob per wallet" (wallet_secrets_{id}) to shared
WalletKey entities referenced by WalletMetadata.key_ids.

Nothing legacy is deleted until the replacement key and the updated metadata have both been read
back and verified.  A wallet that cannot be migrated keeps its legacy blob, and the stored
migration version is left unchanged so that the next unlock retries it.
"""

log				= logging.getLogger( __package__ )


@dataclass
class LegacySecrets:
    mnemonic: str		= field( repr=False )
    seed: bytes			= field( repr=False )


def decode_legacy_secrets( text: str ) -> LegacySecrets:
    """Legacy secrets come in two schemas: the older {mnemonic, passphrase}, from which the BIP-39
    seed must be computed, and the later {mnemonic, bip39Seed}.

    """
    obj				= json.loads( text )
    mnemonic			= obj['mnemonic']
    if obj.get( 'bip39Seed' ):
        return LegacySecrets( mnemonic=mnemonic, seed=bytes.fromhex( obj['bip39Seed'] ))
    # Legacy mnemonics were validated when first stored; derive exactly as they were then.
    seed			= Mnemonic.to_seed( mnemonic, passphrase=obj.get( 'passphrase' ) or "" )
    return LegacySecrets( mnemonic=mnemonic, seed=bytes( seed ))


@dataclass
class MigrationReport:
    from_version: int
    to_version: int
    migrated: List[str]			= field( default_factory=list )
    cleaned: List[str]			= field( default_factory=list )
    skipped: List[str]			= field( default_factory=list )
    aborted: List[MigrationAborted]	= field( default_factory=list )
    keys_created: int			= 0

    @property
    def complete( self ) -> bool:
        return self.to_version >= MIGRATION_VERSION_TARGET and not self.aborted


class MigrationEngine:
    def __init__(
        self,
        store: KeyValueStore,
        session: SessionKeyManager,
        keys: KeyRepository,
        metadata: MetadataRepository,
        target: int			= MIGRATION_VERSION_TARGET,
    ):
        self.store		= store
        self.session		= session
        self.keys		= keys
        self.metadata		= metadata
        self.target		= target

    @property
    def version( self ) -> int:
        try:
            return int( self.store.get( KEY_MIGRATION_VERSION ) or MIGRATION_VERSION_INITIAL )
        except ValueError:
            log.warning( "Corrupt migration version; assuming the initial version" )
            return MIGRATION_VERSION_INITIAL

    def needs_migration( self ) -> bool:
        return self.version < self.target

    def load_legacy_secrets( self, wallet_id: str ) -> Optional[LegacySecrets]:
        blob			= self.store.get( PREFIX_WALLET_SECRETS + wallet_id )
        if blob is None:
            return None
        try:
            return decode_legacy_secrets( self.session.decrypt( blob ).decode( 'utf-8' ))
        except ( ValueError, KeyError, TypeError ) as exc:
            raise StorageCorrupt( f"Legacy secrets for wallet {wallet_id} are corrupt: {exc!r}" ) from exc

    def run_if_needed( self ) -> MigrationReport:
        """Migrate every wallet, if the stored version is below the target; a no-op otherwise."""
        version			= self.version
        report			= MigrationReport( from_version=version, to_version=version )
        if version >= self.target:
            return report
        log.info( f"Migrating wallet data from version {version} to {self.target}" )
        fingerprint_keys	= {}		# fingerprint --> key_id, for keys created in this run
        for metadata in self.metadata.load_all():
            try:
                self.migrate_wallet( metadata, fingerprint_keys, report )
            except SessionInactive:
                raise
            except MigrationAborted as exc:
                log.warning( str( exc ))
                report.aborted.append( exc )
            except Exception as exc:
                aborted		= MigrationAborted( metadata.id, repr( exc ))
                log.warning( str( aborted ))
                if log.isEnabledFor( logging.DEBUG ):
                    log.exception( f"Migration of wallet {metadata.id} failed" )
                report.aborted.append( aborted )
        if report.aborted:
            log.warning( f"Migration incomplete; {len( report.aborted )} wallet(s) will be retried at next unlock" )
        else:
            try:
                self.store.put( KEY_MIGRATION_VERSION, str( self.target ))
                report.to_version = self.target
            except OSError as exc:
                log.warning( f"Failed to record migration version {self.target}; it will be retried at next unlock: {exc}" )
        log.info(
            f"Migration: {len( report.migrated )} wallets migrated, {report.keys_created} keys created,"
            f" {len( report.cleaned )} leftover secrets cleaned, {len( report.aborted )} aborted"
        )
        return report

    def migrate_wallet( self, metadata: WalletMetadata, fingerprint_keys: Dict[str, str], report: MigrationReport ) -> None:
        wallet_id		= metadata.id
        secrets_key		= PREFIX_WALLET_SECRETS + wallet_id
        if metadata.is_multisig:
            return

        if metadata.key_ids:
            # Already migrated; a leftover legacy blob (eg. after a crash) is removed only if the
            # referenced key is confirmed loadable.
            if self.store.contains( secrets_key ):
                if self.keys.load( metadata.key_ids[0] ) is not None:
                    self.store.remove( secrets_key )
                    report.cleaned.append( wallet_id )
                    log.info( f"Removed leftover legacy secrets of migrated wallet {wallet_id}" )
                else:
                    log.warning( f"Wallet {wallet_id} key {metadata.key_ids[0]} is not loadable; keeping legacy secrets" )
            return

        secrets			= self.load_legacy_secrets( wallet_id )
        if secrets is None:
            log.warning( f"Wallet {wallet_id} has neither a key nor legacy secrets; skipping" )
            report.skipped.append( wallet_id )
            return

        fingerprint		= master_fingerprint( secrets.seed )
        if metadata.master_fingerprint and metadata.master_fingerprint != fingerprint:
            log.info( f"Wallet {wallet_id} seed fingerprint {fingerprint} differs from its recorded {metadata.master_fingerprint}" )

        key_id			= fingerprint_keys.get( fingerprint )
        if key_id is not None:
            if self.keys.load( key_id ) is None:
                raise MigrationAborted( wallet_id, f"previously migrated key {key_id} is no longer loadable" )
            log.info( f"Wallet {wallet_id} shares key {key_id}" )
        else:
            key			= WalletKey(
                key_id		= str( uuid.uuid4() ),
                mnemonic	= secrets.mnemonic,
                seed		= secrets.seed,
                fingerprint	= fingerprint,
                label		= self.keys.next_label(),
            )
            res			= self.keys.save( key )
            if not res.ok:
                raise MigrationAborted( wallet_id, f"saving key failed: {res.error}" )
            stored		= self.keys.load( key.key_id )
            if stored is None \
               or stored.mnemonic != secrets.mnemonic \
               or not hmac.compare_digest( stored.seed, secrets.seed ):
                self.keys.delete( key.key_id )
                raise MigrationAborted( wallet_id, f"key {key.key_id} did not read back identically" )
            key_id		= key.key_id
            fingerprint_keys[fingerprint] = key_id
            report.keys_created += 1

        res			= self.metadata.save( metadata.evolve( key_ids=[key_id] ))
        if not res.ok:
            raise MigrationAborted( wallet_id, f"saving metadata failed: {res.error}" )
        stored_metadata		= self.metadata.load( wallet_id )
        if stored_metadata is None or stored_metadata.key_ids[:1] != [key_id]:
            raise MigrationAborted( wallet_id, "metadata did not read back with its key reference" )

        self.store.remove( secrets_key )
        report.migrated.append( wallet_id )
        log.info( f"Migrated wallet {wallet_id} to key {key_id}" )
