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

import json
import logging
import re
import threading

from typing		import Dict, FrozenSet, List, Optional, Sequence

from .defaults		import (
    KEY_WALLET_IDS, KEY_WALLET_ORDER, KEY_WALLET_KEY_IDS, PREFIX_WALLET_META, PREFIX_WALLET_KEY,
    PREFIX_WALLET_SECRETS, METADATA_SCHEMA, KEY_LABEL_PREFIX,
)
from .errors		import (
    Result, SessionInactive, StorageCorrupt, StorageWriteFailed, ReferentialViolation,
)
from .session		import SessionKeyManager
from .store		import KeyValueStore
from .types		import WalletKey, WalletMetadata, decode_metadata, normalize_fingerprint

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )

KEY_LABEL			= re.compile( rf"^{KEY_LABEL_PREFIX} (\d+)$" )


class MetadataRepository:
    """Non-secret WalletMetadata records, the wallet id index, and the user's display order.

    Index and order updates are read-modify-write of a snapshot, committed with the record itself
    in a single put_all, under this repository's lock.

    """
    def __init__( self, store: KeyValueStore ):
        self.store		= store
        self.lock		= threading.RLock()

    def wallet_ids( self ) -> FrozenSet[str]:
        return self.store.get_set( KEY_WALLET_IDS )

    def save( self, metadata: WalletMetadata ) -> Result:
        with self.lock:
            ids			= self.wallet_ids()
            try:
                self.store.put_all( {
                    PREFIX_WALLET_META + metadata.id:	metadata.to_json(),
                    KEY_WALLET_IDS:			ids | { metadata.id },
                } )
            except OSError as exc:
                log.warning( f"Failed to save wallet {metadata.id} metadata: {exc}" )
                return Result.failure( StorageWriteFailed( str( exc )))
        log.debug( f"Saved wallet {metadata.id} metadata" )
        return Result.success( metadata )

    def load( self, wallet_id: str ) -> Optional[WalletMetadata]:
        """Decode the metadata, upgrading (and re-saving) any older schema.  A record that cannot be
        decoded is logged and skipped.

        """
        text			= self.store.get( PREFIX_WALLET_META + wallet_id )
        if text is None:
            return None
        try:
            schema, metadata	= decode_metadata( text )
        except ( ValueError, KeyError, TypeError ) as exc:
            log.warning( f"Wallet {wallet_id} metadata is corrupt; skipping: {exc!r}" )
            return None
        if schema < METADATA_SCHEMA:
            res			= self.save( metadata )
            if res.ok:
                log.info( f"Upgraded wallet {wallet_id} metadata from schema {schema} to {METADATA_SCHEMA}" )
        return metadata

    def load_order( self ) -> List[str]:
        text			= self.store.get( KEY_WALLET_ORDER )
        if not text:
            return []
        try:
            order		= json.loads( text )
        except ValueError:
            log.warning( "Wallet display order is corrupt; ignoring" )
            return []
        return [ str( i ) for i in order ]

    def save_order( self, wallet_ids: Sequence[str] ) -> Result:
        try:
            self.store.put( KEY_WALLET_ORDER, json.dumps( list( wallet_ids )))
        except OSError as exc:
            return Result.failure( StorageWriteFailed( str( exc )))
        return Result.success( list( wallet_ids ))

    def load_all( self ) -> List[WalletMetadata]:
        """All wallets in the saved display order; wallets absent from the saved order follow, in
        order of creation.

        """
        wallets			= {}
        for wallet_id in self.wallet_ids():
            metadata		= self.load( wallet_id )
            if metadata is not None:
                wallets[wallet_id] = metadata
        order			= [ i for i in self.load_order() if i in wallets ]
        placed			= set( order )
        unplaced		= sorted(
            ( m for i,m in wallets.items() if i not in placed ),
            key		= lambda m: ( m.created_at, m.id ),
        )
        return [ wallets[i] for i in order ] + unplaced

    def delete( self, wallet_id: str ) -> Result:
        """Removes the metadata, any legacy secrets, and the wallet's index and order entries."""
        with self.lock:
            ids			= self.wallet_ids()
            order		= [ i for i in self.load_order() if i != wallet_id ]
            try:
                self.store.put_all(
                    {
                        KEY_WALLET_IDS:		ids - { wallet_id },
                        KEY_WALLET_ORDER:	json.dumps( order ),
                    },
                    removals	= ( PREFIX_WALLET_META + wallet_id, PREFIX_WALLET_SECRETS + wallet_id ),
                )
            except OSError as exc:
                return Result.failure( StorageWriteFailed( str( exc )))
        log.info( f"Deleted wallet {wallet_id}" )
        return Result.success( wallet_id )

    def wallets_referencing_key( self, key_id: str ) -> List[str]:
        return [ m.id for m in self.load_all() if key_id in m.key_ids ]

    def multisig_wallets_using_fingerprint( self, fingerprint: str ) -> List[WalletMetadata]:
        fingerprint		= normalize_fingerprint( fingerprint )
        return [
            m for m in self.load_all()
            if m.is_multisig and m.multisig_config
            and any( c.fingerprint == fingerprint for c in m.multisig_config.cosigners )
        ]


class KeyRepository:
    """WalletKey records, each encrypted under the session key and stored as wallet_key_{keyId},
    with the key id index maintained in the same commit.

    Reads and writes require an Active session; SessionInactive is raised otherwise.  Any other
    failure to load a key (wrong session key, corrupt ciphertext, bad JSON) yields None.

    """
    def __init__( self, store: KeyValueStore, session: SessionKeyManager, metadata: MetadataRepository ):
        self.store		= store
        self.session		= session
        self.metadata		= metadata
        self.lock		= threading.RLock()

    def require_active( self ):
        if not self.session.is_active:
            raise SessionInactive()

    def key_ids( self ) -> FrozenSet[str]:
        self.require_active()
        return self.store.get_set( KEY_WALLET_KEY_IDS )

    def encrypt( self, key: WalletKey, session: Optional[SessionKeyManager] = None ) -> Dict[str, str]:
        """The store entry for key, encrypted under session (default: this repository's)."""
        return { PREFIX_WALLET_KEY + key.key_id: ( session or self.session ).encrypt( key.to_json() ) }

    def save( self, key: WalletKey ) -> Result:
        entry			= self.encrypt( key )
        with self.lock:
            ids			= self.key_ids()
            try:
                self.store.put_all( dict( entry, **{ KEY_WALLET_KEY_IDS: ids | { key.key_id } } ))
            except OSError as exc:
                log.warning( f"Failed to save key {key.key_id}: {exc}" )
                return Result.failure( StorageWriteFailed( str( exc )))
        log.info( f"Saved key {key.key_id} ({key.label}, fingerprint {key.fingerprint})" )
        return Result.success( key )

    def load( self, key_id: str ) -> Optional[WalletKey]:
        self.require_active()
        blob			= self.store.get( PREFIX_WALLET_KEY + key_id )
        if blob is None:
            return None
        try:
            key			= WalletKey.from_json( self.session.decrypt( blob ).decode( 'utf-8' ))
        except StorageCorrupt as exc:
            log.warning( f"Key {key_id} could not be decrypted: {exc}" )
            return None
        except ( ValueError, KeyError, TypeError ) as exc:
            log.warning( f"Key {key_id} could not be decoded: {exc!r}" )
            return None
        if key.key_id != key_id:
            log.warning( f"Key stored as {key_id} claims id {key.key_id}; ignoring" )
            return None
        return key

    def load_all( self ) -> List[WalletKey]:
        """All loadable keys, ordered by label (numerically, for auto-generated labels)."""
        keys			= [ k for k in ( self.load( i ) for i in self.key_ids() ) if k is not None ]

        def label_order( key ):
            match		= KEY_LABEL.match( key.label )
            return ( 0, int( match.group( 1 )), '' ) if match else ( 1, 0, key.label )
        return sorted( keys, key=lambda k: ( label_order( k ), k.key_id ))

    def find_by_fingerprint( self, fingerprint: str ) -> Optional[WalletKey]:
        fingerprint		= normalize_fingerprint( fingerprint )
        for key in self.load_all():
            if key.fingerprint == fingerprint:
                return key
        return None

    def delete( self, key_id: str ) -> Result:
        """Refuses (ReferentialViolation) while any wallet references the key."""
        self.require_active()
        with self.lock:
            referencing		= self.metadata.wallets_referencing_key( key_id )
            if referencing:
                return Result.failure( ReferentialViolation( key_id, referencing ))
            ids			= self.key_ids()
            try:
                self.store.put_all(
                    { KEY_WALLET_KEY_IDS: ids - { key_id } },
                    removals	= ( PREFIX_WALLET_KEY + key_id, ),
                )
            except OSError as exc:
                return Result.failure( StorageWriteFailed( str( exc )))
        log.info( f"Deleted key {key_id}" )
        return Result.success( key_id )

    def next_label( self ) -> str:
        """"Key N", for the smallest N >= 1 not already used by a "Key N" label."""
        used			= set()
        for key in self.load_all():
            match		= KEY_LABEL.match( key.label )
            if match:
                used.add( int( match.group( 1 )))
        n			= 1
        while n in used:
            n		       += 1
        return f"{KEY_LABEL_PREFIX} {n}"
