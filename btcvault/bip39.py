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

from typing		import Optional, Union

from mnemonic		import Mnemonic
from mnemonic.mnemonic	import ConfigurationError

from .defaults		import BITS_DEFAULT, BITS
from .util		import commas

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )

RANDOM_BYTES			= secrets.token_bytes


def normalize_mnemonic(
    mnemonic: str,
    language: Optional[str]	= None,
) -> str:
    """Normalize and validate a BIP-39 Mnemonic Phrase (which is often recovered as user input):

    - Removes excess whitespace and down-cases
    - Detects language if not provided
    - Expands unambiguous mnemonic prefixes (eg. 'ae' --> 'aerobic', 'acti' --> 'action')
    - Checks that the BIP-39 Phrase check bits are valid

    Raises ValueError, naming any unrecognized words, if the phrase fails its check.

    """
    mnemonic_stripped		= ' '.join( w.lower() for w in mnemonic.strip().split() if w )
    if mnemonic_stripped != mnemonic:
        log.info( "BIP-39 Mnemonic Phrase stripped of unnecessary whitespace" )
    if not language:
        try:
            language		= Mnemonic.detect_language( mnemonic_stripped )
        except ConfigurationError as exc:
            raise ValueError( f"BIP-39 Mnemonic language not recognized: {exc}" ) from exc
        log.debug( f"BIP-39 Language detected: {language}" )
    m				= Mnemonic( language )
    mnemonic_expanded		= m.expand( mnemonic_stripped )
    if mnemonic_expanded != mnemonic_stripped:
        log.info( "BIP-39 Mnemonic Phrase prefixes expanded" )
    if not m.check( mnemonic_expanded ):
        unrecognized		= [ w for w in mnemonic_expanded.split() if w not in m.wordlist ]
        raise ValueError( f"BIP-39 Mnemonic check fails; {len( unrecognized )} unrecognized {m.language} words {commas( unrecognized )}" )
    return mnemonic_expanded


def validate_mnemonic( mnemonic: str ) -> bool:
    try:
        normalize_mnemonic( mnemonic )
    except ValueError as exc:
        log.info( f"Invalid BIP-39 Mnemonic: {exc}" )
        return False
    return True


def recover_bip39(
    mnemonic: str,
    passphrase: Optional[Union[str,bytes]] = None,
    language: Optional[str]	= None,
) -> bytes:
    """Recover the 512-bit BIP-39 seed (PBKDF2-HMAC-SHA512, 2048 iterations, salt "mnemonic" +
    passphrase) from a validated BIP-39 Mnemonic Phrase and optional passphrase.

    """
    mnemonic_expanded		= normalize_mnemonic( mnemonic, language=language )
    if passphrase is None:
        passphrase		= ""
    # python-mnemonic's Mnemonic requires passphrase as str (not bytes)
    passphrase_bip39		= passphrase if isinstance( passphrase, str ) else passphrase.decode( 'UTF-8' )
    seed			= Mnemonic.to_seed( mnemonic_expanded, passphrase=passphrase_bip39 )
    log.info( f"Recovered {len( seed ) * 8}-bit BIP-39 seed{' (with passphrase)' if passphrase_bip39 else ''}" )
    return bytes( seed )


def produce_bip39(
    entropy: Optional[bytes]	= None,
    strength: Optional[int]	= None,
    language: Optional[str]	= None,
) -> str:
    """Produce a BIP-39 Mnemonic from the provided entropy (or generated, default 128 bits).

    All entropy comes from RANDOM_BYTES, so that it may be monkey-patched in one place for testing.
    """
    if not entropy:
        if not strength:
            strength		= BITS_DEFAULT
        if strength not in BITS:
            raise ValueError( f"BIP-39 strength must be one of {commas( BITS, final='or' )} bits, not {strength}" )
        entropy			= RANDOM_BYTES( strength // 8 )
    return Mnemonic( language or "english" ).to_mnemonic( entropy )
