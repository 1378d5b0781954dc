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

from dataclasses	import replace
from typing		import Dict, Iterable, List, Sequence, Tuple

from .repository	import MetadataRepository
from .types		import MultisigConfig, WalletKey, WalletMetadata

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )


def fingerprint_keys( keys: Iterable[WalletKey] ) -> Dict[str, str]:
    """fingerprint --> key_id; the first key (in the order given) wins for a duplicated seed."""
    index			= {}
    for key in keys:
        index.setdefault( key.fingerprint, key.key_id )
    return index


def bind_config( config: MultisigConfig, keys: Sequence[WalletKey] ) -> Tuple[MultisigConfig, List[str]]:
    """Recompute each cosigner's is_local/key_id against keys; returns the new config and the
    ordered, de-duplicated key ids of its local cosigners.

    """
    index			= fingerprint_keys( keys )
    cosigners			= [
        replace( c, is_local=c.fingerprint in index, key_id=index.get( c.fingerprint ))
        for c in config.cosigners
    ]
    key_ids			= []
    for c in cosigners:
        if c.key_id and c.key_id not in key_ids:
            key_ids.append( c.key_id )
    return replace(
        config,
        cosigners		= cosigners,
        local_key_fingerprints	= sorted( { c.fingerprint for c in cosigners if c.is_local } ),
    ), key_ids


def rebind( keys: Sequence[WalletKey], metadata: MetadataRepository ) -> int:
    """Reconcile every multisig wallet's cosigners with the current keys, saving only those whose
    set of referenced key ids changed.  Returns the number of wallets updated.

    """
    updated			= 0
    for wallet in metadata.load_all():
        if not wallet.is_multisig or wallet.multisig_config is None:
            continue
        with metadata.lock:
            # Re-read inside the critical section; the wallet may have changed since load_all
            current		= metadata.load( wallet.id )
            if current is None or current.multisig_config is None:
                continue
            config, key_ids	= bind_config( current.multisig_config, keys )
            if set( key_ids ) == set( current.key_ids ):
                continue
            res			= metadata.save( rebound( current, config, key_ids ))
        if res.ok:
            updated	       += 1
            log.info( f"Rebound multisig wallet {wallet.id}: {len( key_ids )} local key(s)" )
        else:
            log.warning( f"Failed to rebind multisig wallet {wallet.id}: {res.error}" )
    return updated


def rebound( wallet: WalletMetadata, config: MultisigConfig, key_ids: List[str] ) -> WalletMetadata:
    return wallet.evolve( multisig_config=config, key_ids=key_ids )
