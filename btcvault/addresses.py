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
import logging

from typing		import Sequence

import base58
import coincurve

from bip_utils		import SegwitBech32Encoder

from .bip32		import hash160, CURVE_ORDER
from .types		import ScriptType, MultisigScriptType

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
Bitcoin output scripts and addresses, for single-signature (P2PKH, P2SH-P2WPKH, P2WPKH, P2TR)
and sorted multisig (P2WSH, P2SH-P2WSH, P2SH) wallets.
"""

log				= logging.getLogger( __package__ )

OP_0				= 0x00
OP_1				= 0x51
OP_CHECKMULTISIG		= 0xae

NETWORKS			= dict(
    main	= dict( hrp="bc", p2pkh=0x00, p2sh=0x05 ),
    test	= dict( hrp="tb", p2pkh=0x6f, p2sh=0xc4 ),
)


def network( testnet: bool = False ) -> dict:
    return NETWORKS['test' if testnet else 'main']


def sha256( data: bytes ) -> bytes:
    return hashlib.sha256( data ).digest()


def tagged_hash( tag: str, msg: bytes ) -> bytes:
    """BIP-340 tagged hash: SHA256( SHA256(tag) || SHA256(tag) || msg )"""
    tag_hash			= sha256( tag.encode( 'utf-8' ))
    return sha256( tag_hash + tag_hash + msg )


def op_n( n: int ) -> int:
    """The opcode pushing small integer n (0-16)."""
    if not 0 <= n <= 16:
        raise ValueError( f"OP_n supports only 0-16, not {n}" )
    return OP_0 if n == 0 else OP_1 + n - 1


def push( data: bytes ) -> bytes:
    if len( data ) < 0x4c:
        return bytes( [len( data )] ) + data
    if len( data ) <= 0xff:
        return b'\x4c' + bytes( [len( data )] ) + data
    return b'\x4d' + len( data ).to_bytes( 2, 'little' ) + data


def multisig_script( m: int, pubkeys: Sequence[bytes], sort: bool = True ) -> bytes:
    """OP_m <pubkey>... OP_n OP_CHECKMULTISIG; with sort, the keys are ordered lexicographically
    (BIP-67, as for descriptor sortedmulti).

    """
    keys			= sorted( pubkeys ) if sort else list( pubkeys )
    if not 1 <= m <= len( keys ) <= 16:
        raise ValueError( f"Invalid {m}-of-{len( keys )} multisig" )
    for key in keys:
        if len( key ) != 33:
            raise ValueError( "Multisig requires 33-byte compressed public keys" )
    return (
        bytes( [op_n( m )] )
        + b''.join( push( k ) for k in keys )
        + bytes( [op_n( len( keys )), OP_CHECKMULTISIG] )
    )


def _base58_address( version: int, payload: bytes ) -> str:
    return base58.b58encode_check( bytes( [version] ) + payload ).decode( 'ascii' )


def _segwit_address( witver: int, program: bytes, testnet: bool ) -> str:
    """Witness v0 programs use the bech32 checksum, v1+ (taproot) use bech32m (BIP-350)."""
    if not 0 <= witver <= 16 or not 2 <= len( program ) <= 40 or ( witver == 0 and len( program ) not in ( 20, 32 )):
        raise ValueError( f"Unable to encode witness v{witver} program of {len( program )} bytes" )
    return SegwitBech32Encoder.Encode( network( testnet )['hrp'], witver, program )


def p2pkh_address( pubkey: bytes, testnet: bool = False ) -> str:
    return _base58_address( network( testnet )['p2pkh'], hash160( pubkey ))


def p2sh_address( redeem_script: bytes, testnet: bool = False ) -> str:
    return _base58_address( network( testnet )['p2sh'], hash160( redeem_script ))


def p2wpkh_address( pubkey: bytes, testnet: bool = False ) -> str:
    return _segwit_address( 0, hash160( pubkey ), testnet )


def p2sh_p2wpkh_address( pubkey: bytes, testnet: bool = False ) -> str:
    return p2sh_address( bytes( [OP_0] ) + push( hash160( pubkey )), testnet )


def p2wsh_address( witness_script: bytes, testnet: bool = False ) -> str:
    return _segwit_address( 0, sha256( witness_script ), testnet )


def p2sh_p2wsh_address( witness_script: bytes, testnet: bool = False ) -> str:
    return p2sh_address( bytes( [OP_0] ) + push( sha256( witness_script )), testnet )


def taproot_output_key( pubkey: bytes ) -> bytes:
    """BIP-86 key-path-only output key: Q = P + H_TapTweak(x(P))G, where P is the even-Y point with
    the internal key's X coordinate.  Returns the 32-byte X-only Q.

    """
    xonly			= pubkey[1:] if len( pubkey ) == 33 else pubkey
    if len( xonly ) != 32:
        raise ValueError( "Taproot requires a 33-byte compressed or 32-byte x-only public key" )
    tweak			= tagged_hash( "TapTweak", xonly )
    if int.from_bytes( tweak, 'big' ) >= CURVE_ORDER:
        raise ValueError( "Taproot tweak out of range" )
    return coincurve.PublicKey( b'\x02' + xonly ).add( tweak ).format( compressed=True )[1:]


def p2tr_address( pubkey: bytes, testnet: bool = False ) -> str:
    return _segwit_address( 1, taproot_output_key( pubkey ), testnet )


SINGLE_SIG_ADDRESS		= {
    ScriptType.P2PKH:		p2pkh_address,
    ScriptType.P2SH_P2WPKH:	p2sh_p2wpkh_address,
    ScriptType.P2WPKH:		p2wpkh_address,
    ScriptType.P2TR:		p2tr_address,
}


def address( script_type: ScriptType, pubkey: bytes, testnet: bool = False ) -> str:
    return SINGLE_SIG_ADDRESS[ScriptType( script_type )]( pubkey, testnet )


def multisig_address(
    script_type: MultisigScriptType,
    m: int,
    pubkeys: Sequence[bytes],
    testnet: bool = False,
) -> str:
    """The sortedmulti address for the given (unsorted) cosigner child public keys."""
    script			= multisig_script( m, pubkeys, sort=True )
    script_type			= MultisigScriptType( script_type )
    if script_type is MultisigScriptType.P2WSH:
        return p2wsh_address( script, testnet )
    if script_type is MultisigScriptType.P2SH_P2WSH:
        return p2sh_p2wsh_address( script, testnet )
    return p2sh_address( script, testnet )
