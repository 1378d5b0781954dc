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
import re

from typing		import List, Optional

from .defaults		import (
    COIN_MAINNET, COIN_TESTNET, PURPOSE_DEFAULT, PURPOSE_SCRIPT_TYPE, BIP48_SCRIPT_TYPE,
)

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
HD wallet derivation path strings.  Hardened segments may be marked with ' or h (or H); the
marker in use is preserved when a path is edited.
"""

log				= logging.getLogger( __package__ )

HARDENED			= 0x80000000

PATH_SEGMENT			= re.compile( r"^(\d+)(['hH]?)$" )
ACCOUNT_PATH			= re.compile( r"^m/(\d+)(['hH])/(\d+)(['hH])/(\d+)(['hH])(/.*)?$" )

TESTNET_XKEY_PREFIXES		= ( 'tpub', 'tprv', 'upub', 'uprv', 'vpub', 'vprv', 'Upub', 'Uprv', 'Vpub', 'Vprv' )


def parse_path( path: str ) -> List[int]:
    """Parse "m/84'/0'/0'/0/5" into a list of BIP-32 child indices (hardened indices offset by
    0x80000000).  A leading "m" is optional; "m", "m/" and "" yield [].

    """
    segs			= ( path or '' ).strip().split( '/' )
    if segs and segs[0] == 'm':
        segs			= segs[1:]
    indices			= []
    for seg in filter( None, segs ):
        match			= PATH_SEGMENT.match( seg )
        if not match:
            raise ValueError( f"Invalid derivation path segment {seg!r} in {path!r}" )
        index			= int( match.group( 1 ))
        if index >= HARDENED:
            raise ValueError( f"Derivation path index {index} out of range in {path!r}" )
        indices.append( index + HARDENED if match.group( 2 ) else index )
    return indices


def format_path( indices: List[int], marker: str = "'" ) -> str:
    return '/'.join( [ 'm' ] + [
        f"{i - HARDENED}{marker}" if i >= HARDENED else f"{i}"
        for i in indices
    ] )


def normalize_path( path: str ) -> str:
    """Canonical form, with ' hardened markers; validates the path."""
    return format_path( parse_path( path ))


def purpose_of( path: str ) -> Optional[int]:
    indices			= parse_path( path )
    if indices and indices[0] >= HARDENED:
        return indices[0] - HARDENED
    return None


def coin_type_of( path: str ) -> Optional[int]:
    indices			= parse_path( path )
    if len( indices ) > 1 and indices[1] >= HARDENED:
        return indices[1] - HARDENED
    return None


def account_number_of( path: str ) -> int:
    match			= ACCOUNT_PATH.match( ( path or '' ).strip() )
    return int( match.group( 5 )) if match else 0


def with_account_number( path: str, account: int ) -> str:
    """Replace the account segment of a m/purpose'/coin'/account'[/...] path, preserving purpose,
    coin type, any trailing segments and the hardened marker style.  This is pure string
    manipulation; no re-derivation from the seed is implied.

        >>> with_account_number( "m/84'/0'/0'", 5 )
        "m/84'/0'/5'"
        >>> with_account_number( "m/48h/1h/0h/2h", 3 )
        'm/48h/1h/3h/2h'

    A path that is not recognizable as an account-level path is replaced by the default BIP-84
    mainnet account path.

    """
    if not 0 <= account < HARDENED:
        raise ValueError( f"Account number {account} out of range" )
    match			= ACCOUNT_PATH.match( ( path or '' ).strip() )
    if not match:
        log.warning( f"Unrecognized account path {path!r}; using default BIP-{PURPOSE_DEFAULT} path for account {account}" )
        return f"m/{PURPOSE_DEFAULT}'/{COIN_MAINNET}'/{account}'"
    purpose, p_mark, coin, c_mark, _, a_mark, rest = match.groups()
    return f"m/{purpose}{p_mark}/{coin}{c_mark}/{account}{a_mark}{rest or ''}"


def is_testnet_path( path: str ) -> bool:
    try:
        return coin_type_of( path ) == COIN_TESTNET
    except ValueError:
        return False


def is_testnet_xkey( xkey: str ) -> bool:
    return ( xkey or '' ).strip()[:4] in TESTNET_XKEY_PREFIXES


def account_path( purpose: int, account: int = 0, testnet: bool = False ) -> str:
    """The BIP-44/49/84/86 account-level path m/purpose'/coin'/account'"""
    return f"m/{purpose}'/{COIN_TESTNET if testnet else COIN_MAINNET}'/{account}'"


def multisig_path( script_type: str, account: int = 0, testnet: bool = False ) -> str:
    """The BIP-48 cosigner path m/48'/coin'/account'/script_type'; script_type 2' is P2WSH, 1' is
    P2SH-P2WSH.  Legacy P2SH multisig has no BIP-48 script type, and uses the P2WSH path.

    """
    return f"m/48'/{COIN_TESTNET if testnet else COIN_MAINNET}'/{account}'/{BIP48_SCRIPT_TYPE.get( script_type, 2 )}'"


def script_type_for_path( path: str ) -> str:
    """The single-signature script type (name) implied by a path's purpose; BIP-84 if unknown."""
    try:
        purpose			= purpose_of( path )
    except ValueError:
        purpose			= None
    return PURPOSE_SCRIPT_TYPE.get( purpose, PURPOSE_SCRIPT_TYPE[PURPOSE_DEFAULT] )
