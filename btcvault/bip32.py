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

from typing		import Optional, Union

import base58
import coincurve

from Crypto.Hash	import RIPEMD160

from .paths		import HARDENED, parse_path, format_path

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
BIP-32 extended key arithmetic over secp256k1 (via coincurve).

Extended keys may carry any of the SLIP-132 version prefixes (xpub/ypub/zpub, their testnet
tpub/upub/vpub, and the BIP-48 multisig Ypub/Zpub/Upub/Vpub); the version affects only the
serialization, never the derivation.
"""

log				= logging.getLogger( __package__ )

CURVE_ORDER			= 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

#                                   version,    private, testnet
VERSIONS			= dict(
    xpub		= ( 0x0488b21e, False,   False ),
    xprv		= ( 0x0488ade4, True,    False ),
    ypub		= ( 0x049d7cb2, False,   False ),
    yprv		= ( 0x049d7878, True,    False ),
    zpub		= ( 0x04b24746, False,   False ),
    zprv		= ( 0x04b2430c, True,    False ),
    Ypub		= ( 0x0295b43f, False,   False ),	# BIP-48 P2SH-P2WSH
    Yprv		= ( 0x0295b005, True,    False ),
    Zpub		= ( 0x02aa7ed3, False,   False ),	# BIP-48 P2WSH
    Zprv		= ( 0x02aa7a99, True,    False ),
    tpub		= ( 0x043587cf, False,   True ),
    tprv		= ( 0x04358394, True,    True ),
    upub		= ( 0x044a5262, False,   True ),
    uprv		= ( 0x044a4e28, True,    True ),
    vpub		= ( 0x045f1cf6, False,   True ),
    vprv		= ( 0x045f18bc, True,    True ),
    Upub		= ( 0x024289ef, False,   True ),
    Uprv		= ( 0x024285b5, True,    True ),
    Vpub		= ( 0x02575483, False,   True ),
    Vprv		= ( 0x02575048, True,    True ),
)
VERSION_NAMES			= { v[0]: name for name,v in VERSIONS.items() }


def public_version( version: str ) -> str:
    """The public counterpart of a version prefix, eg. 'zprv' --> 'zpub'."""
    return version[:1] + 'pub'


def private_version( version: str ) -> str:
    return version[:1] + 'prv'


def hash160( data: bytes ) -> bytes:
    return RIPEMD160.new( hashlib.sha256( data ).digest() ).digest()


def ser32( i: int ) -> bytes:
    return i.to_bytes( 4, 'big' )


class ExtendedKey:
    """A BIP-32 HD wallet node; either private (32-byte key) or public (33-byte compressed key)."""

    def __init__(
        self,
        key: bytes,
        chain_code: bytes,
        depth: int			= 0,
        parent_fingerprint: bytes	= b'\0' * 4,
        child_number: int		= 0,
        version: Optional[str]		= None,
    ):
        assert len( chain_code ) == 32, \
            f"BIP-32 chain code must be 32 bytes, not {len( chain_code )}"
        if len( key ) == 32:
            self.private		= True
        elif len( key ) == 33 and key[0] in ( 2, 3 ):
            self.private		= False
        else:
            raise ValueError( "BIP-32 key must be a 32-byte private or 33-byte compressed public key" )
        self.key			= bytes( key )
        self.chain_code			= bytes( chain_code )
        self.depth			= depth
        self.parent_fingerprint		= bytes( parent_fingerprint )
        self.child_number		= child_number
        if version is None:
            version			= 'xprv' if self.private else 'xpub'
        self.version			= private_version( version ) if self.private else public_version( version )
        self._public			= None

    def __repr__( self ):
        return f"{self.__class__.__name__}({self.version} depth={self.depth} fingerprint={self.fingerprint.hex()})"

    def __str__( self ):
        return self.serialize()

    @classmethod
    def from_seed( cls, seed: Union[bytes,bytearray], version: str = 'xprv' ) -> ExtendedKey:
        if not 16 <= len( seed ) <= 64:
            raise ValueError( f"BIP-32 seed must be 16 to 64 bytes, not {len( seed )}" )
        digest			= hmac.new( b"Bitcoin seed", bytes( seed ), hashlib.sha512 ).digest()
        k			= int.from_bytes( digest[:32], 'big' )
        if not 0 < k < CURVE_ORDER:
            raise ValueError( "Seed produces an invalid BIP-32 master key" )
        return cls( digest[:32], digest[32:], version=version )

    @classmethod
    def parse( cls, text: str ) -> ExtendedKey:
        """Decode any SLIP-132 x/y/z/t/u/v/Y/Z/U/V pub/prv extended key."""
        try:
            raw			= base58.b58decode_check( text.strip() )
        except ValueError as exc:
            raise ValueError( f"Invalid extended key checksum/encoding: {exc}" ) from exc
        if len( raw ) != 78:
            raise ValueError( f"Extended key must decode to 78 bytes, not {len( raw )}" )
        version_int		= int.from_bytes( raw[:4], 'big' )
        version			= VERSION_NAMES.get( version_int )
        if version is None:
            raise ValueError( f"Unrecognized extended key version 0x{version_int:08x}" )
        key			= raw[45:]
        if VERSIONS[version][1]:
            if key[0] != 0:
                raise ValueError( f"Private {version} key data must begin with a zero byte" )
            key			= key[1:]
            if not 0 < int.from_bytes( key, 'big' ) < CURVE_ORDER:
                raise ValueError( f"Private {version} key out of range" )
        else:
            try:
                coincurve.PublicKey( key )
            except ValueError as exc:
                raise ValueError( f"Invalid {version} public key: {exc}" ) from exc
        return cls(
            key			= key,
            chain_code		= raw[13:45],
            depth		= raw[4],
            parent_fingerprint	= raw[5:9],
            child_number	= int.from_bytes( raw[9:13], 'big' ),
            version		= version,
        )

    @property
    def public_key( self ) -> bytes:
        """The 33-byte compressed SEC public key."""
        if self._public is None:
            if self.private:
                self._public	= coincurve.PrivateKey( self.key ).public_key.format( compressed=True )
            else:
                self._public	= self.key
        return self._public

    @property
    def identifier( self ) -> bytes:
        return hash160( self.public_key )

    @property
    def fingerprint( self ) -> bytes:
        return self.identifier[:4]

    @property
    def testnet( self ) -> bool:
        return VERSIONS[self.version][2]

    def child( self, index: int ) -> ExtendedKey:
        """CKDpriv (for a private node) or CKDpub (for a public node; non-hardened only)."""
        if index >= HARDENED:
            if not self.private:
                raise ValueError( f"Cannot derive hardened child {index - HARDENED}' from a public key" )
            data		= b'\0' + self.key + ser32( index )
        else:
            data		= self.public_key + ser32( index )
        digest			= hmac.new( self.chain_code, data, hashlib.sha512 ).digest()
        il, ir			= digest[:32], digest[32:]
        il_int			= int.from_bytes( il, 'big' )
        if il_int >= CURVE_ORDER:
            raise ValueError( f"Child {index} of {self!r} is invalid; use the next index" )
        if self.private:
            k			= ( il_int + int.from_bytes( self.key, 'big' )) % CURVE_ORDER
            if k == 0:
                raise ValueError( f"Child {index} of {self!r} is invalid; use the next index" )
            key			= k.to_bytes( 32, 'big' )
        else:
            # Ki = point(IL) + Kpar
            key			= coincurve.PublicKey( self.key ).add( il ).format( compressed=True )
        return self.__class__(
            key			= key,
            chain_code		= ir,
            depth		= self.depth + 1,
            parent_fingerprint	= self.fingerprint,
            child_number	= index,
            version		= self.version,
        )

    def derive( self, path: str ) -> ExtendedKey:
        """Derive along a relative ("0/5") or absolute ("m/84'/0'/0'") path from this node."""
        node			= self
        for index in parse_path( path ):
            node		= node.child( index )
        log.debug( f"Derived {format_path( parse_path( path ))} from {self!r}" )
        return node

    def neuter( self, version: Optional[str] = None ) -> ExtendedKey:
        """The watch-only public node; same chain code, depth and parentage."""
        return self.__class__(
            key			= self.public_key,
            chain_code		= self.chain_code,
            depth		= self.depth,
            parent_fingerprint	= self.parent_fingerprint,
            child_number	= self.child_number,
            version		= public_version( version or self.version ),
        )

    def with_version( self, version: str ) -> ExtendedKey:
        if version not in VERSIONS:
            raise ValueError( f"Unrecognized extended key version {version!r}" )
        if VERSIONS[version][1] and not self.private:
            raise ValueError( f"Cannot represent a public key as {version}" )
        return self.__class__(
            key			= self.key if VERSIONS[version][1] else self.public_key,
            chain_code		= self.chain_code,
            depth		= self.depth,
            parent_fingerprint	= self.parent_fingerprint,
            child_number	= self.child_number,
            version		= version,
        )

    def serialize( self, version: Optional[str] = None ) -> str:
        version			= version or self.version
        version_int, private, _	= VERSIONS[version]
        if private and not self.private:
            raise ValueError( f"Cannot serialize a public key as {version}" )
        keydata			= b'\0' + self.key if private else self.public_key
        raw			= (
            version_int.to_bytes( 4, 'big' )
            + bytes( [self.depth] )
            + self.parent_fingerprint
            + ser32( self.child_number )
            + self.chain_code
            + keydata
        )
        return base58.b58encode_check( raw ).decode( 'ascii' )

    def wif( self, testnet: Optional[bool] = None ) -> str:
        """Wallet Import Format of the private key (compressed)."""
        if not self.private:
            raise ValueError( "Only private keys have a WIF encoding" )
        if testnet is None:
            testnet		= self.testnet
        prefix			= b'\xef' if testnet else b'\x80'
        return base58.b58encode_check( prefix + self.key + b'\x01' ).decode( 'ascii' )


def master_fingerprint( seed: bytes ) -> str:
    """The lower-case hex fingerprint (first 4 bytes of HASH160 of the master public key) of a seed."""
    return ExtendedKey.from_seed( seed ).fingerprint.hex()


def convert_xkey( xkey: str, version: str ) -> str:
    """Re-encode an extended key with different SLIP-132 version bytes, eg. Zpub --> xpub."""
    return ExtendedKey.parse( xkey ).with_version( version ).serialize()
