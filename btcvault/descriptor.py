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

from collections	import namedtuple
from typing		import Iterable, List, Mapping, Optional, Tuple

from .addresses		import multisig_address as script_multisig_address
from .bip32		import ExtendedKey
from .defaults		import MULTISIG_SCAN_GAP
from .errors		import DescriptorParseError, Result
from .types		import CosignerInfo, MultisigConfig, MultisigScriptType, normalize_fingerprint

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
Multisig output descriptors, optionally wrapped in a BSMS (BIP-129) envelope:

    BSMS 1.0
    wsh(sortedmulti(2,[b68bb824/48'/1'/0'/2']tpubDFBh.../<0;1>/*,[aabbccdd/48'/1'/0'/2']tpubD2.../<0;1>/*))#checksum
    /0/*,/1/*
    tb1q...

Parsing reconciles the cosigner key origins against the caller's local key fingerprints; a
descriptor in which none of the cosigners is held locally is rejected.
"""

log				= logging.getLogger( __package__ )

BSMS_VERSION			= "BSMS 1.0"
NO_PATH_RESTRICTIONS		= "No path restrictions"
STANDARD_PATH_RESTRICTIONS	= "/0/*,/1/*"

DESCRIPTOR_PREFIXES		= ( 'wsh(', 'sh(', 'wpkh(', 'pkh(', 'tr(' )

# [fingerprint/path]xpub, with an optional /<0;1>/* or /* multipath/wildcard suffix
KEY_PATTERN			= re.compile(
    r"\[([a-fA-F0-9]{8})(/[^\]]+)?\]([xXtTyYuUzZvV]pub[a-zA-Z0-9]+)(?:/<[^>]+>/\*|/\*|\*)?"
)
THRESHOLD_PATTERN		= re.compile( r"(?:sorted)?multi\((\d+)," )
MULTIPATH_PATTERN		= re.compile( r"/<(\d+(?:;\d+)*)>/\*" )
WILDCARD_PATTERN		= re.compile( r"/(\d+)?\*" )
ADDRESS_PATTERN			= re.compile( r"^(tb1|bc1|[123mn])[a-zA-Z0-9]{25,90}$" )


#
# BIP-380 descriptor checksums
#
INPUT_CHARSET			= "0123456789()[],'/*abcdefgh@:$%{}IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
CHECKSUM_CHARSET		= "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def polymod( c: int, val: int ) -> int:
    c0				= c >> 35
    c				= (( c & 0x7ffffffff ) << 5 ) ^ val
    if c0 & 1:
        c		       ^= 0xf5dee51989
    if c0 & 2:
        c		       ^= 0xa9fdca3312
    if c0 & 4:
        c		       ^= 0x1bab10e32d
    if c0 & 8:
        c		       ^= 0x3706b1677a
    if c0 & 16:
        c		       ^= 0x644d626ffd
    return c


def descriptor_checksum( desc: str ) -> str:
    """The 8-character checksum of a descriptor (without any existing #checksum)."""
    c				= 1
    cls				= 0
    clscount			= 0
    for ch in desc:
        pos			= INPUT_CHARSET.find( ch )
        if pos == -1:
            raise ValueError( f"Invalid descriptor character {ch!r}" )
        c			= polymod( c, pos & 31 )
        cls			= cls * 3 + ( pos >> 5 )
        clscount	       += 1
        if clscount == 3:
            c			= polymod( c, cls )
            cls			= 0
            clscount		= 0
    if clscount > 0:
        c			= polymod( c, cls )
    for _ in range( 8 ):
        c			= polymod( c, 0 )
    c			       ^= 1
    return ''.join( CHECKSUM_CHARSET[( c >> ( 5 * ( 7 - j ))) & 31] for j in range( 8 ))


def remove_checksum( desc: str ) -> str:
    return desc.rsplit( '#', 1 )[0].strip() if '#' in desc else desc.strip()


def append_checksum( desc: str ) -> str:
    desc			= remove_checksum( desc )
    return f"{desc}#{descriptor_checksum( desc )}"


def verify_checksum( desc: str ) -> Optional[bool]:
    """Whether a descriptor's #checksum is correct; None if it carries none."""
    desc			= desc.strip()
    if '#' not in desc:
        return None
    body, checksum		= desc.rsplit( '#', 1 )
    try:
        return descriptor_checksum( body ) == checksum.strip()
    except ValueError:
        return False


#
# BSMS envelopes
#
BSMSInput			= namedtuple( 'BSMSInput', ('descriptor', 'path_restrictions', 'first_address', 'is_bsms') )


def extract_descriptor( text: str ) -> BSMSInput:
    """Extract the descriptor (and any BSMS path restrictions and verification address) from a BSMS
    document or a plain descriptor.  The descriptor is returned as supplied, including any checksum.

    """
    lines			= [ line.strip() for line in text.splitlines() if line.strip() ]
    if lines and lines[0].upper().startswith( "BSMS" ):
        descriptor		= None
        path_restrictions	= None
        first_address		= None
        for line in lines[1:]:
            if line.startswith( '#' ):
                continue
            if descriptor is None and line.lower().startswith( DESCRIPTOR_PREFIXES ):
                descriptor	= line
            elif line.startswith( '/' ):
                path_restrictions = line
            elif line.lower() == NO_PATH_RESTRICTIONS.lower():
                path_restrictions = NO_PATH_RESTRICTIONS
            elif ADDRESS_PATTERN.match( line ):
                first_address	= line
        log.debug( f"BSMS {lines[0]!r} envelope; path restrictions {path_restrictions}, first address {first_address}" )
        return BSMSInput( descriptor or '', path_restrictions, first_address, True )
    for line in lines:
        if not line.startswith( '#' ) and line.lower().startswith( DESCRIPTOR_PREFIXES ):
            return BSMSInput( line, None, None, False )
    return BSMSInput( text.strip(), None, None, False )


def extract_path_restrictions( desc: str ) -> str:
    """BSMS path restrictions implied by a descriptor's key suffixes: /<0;1>/* --> "/0/*,/1/*"."""
    match			= MULTIPATH_PATTERN.search( desc )
    if match:
        return ','.join( f"/{i}/*" for i in match.group( 1 ).split( ';' ))
    if WILDCARD_PATTERN.search( desc ):
        return STANDARD_PATH_RESTRICTIONS
    if '/' in desc and '*' not in desc:
        return NO_PATH_RESTRICTIONS
    return STANDARD_PATH_RESTRICTIONS


DescriptorRecord		= namedtuple( 'DescriptorRecord', ('version', 'descriptor', 'path_restrictions', 'first_address') )


def format_descriptor( record: DescriptorRecord ) -> str:
    """The BSMS 1.0 descriptor record text."""
    return '\n'.join( record )


#
# Descriptor parsing
#
def script_type_of( desc: str ) -> MultisigScriptType:
    desc			= desc.strip().lower()
    if desc.startswith( 'sh(wsh(' ):
        return MultisigScriptType.P2SH_P2WSH
    if desc.startswith( 'wsh(' ):
        return MultisigScriptType.P2WSH
    if desc.startswith( 'sh(' ):
        return MultisigScriptType.P2SH
    return MultisigScriptType.P2WSH


def parse_descriptor(
    text: str,
    local_fingerprints: Iterable[str],
    key_ids: Optional[Mapping[str, str]] = None,
) -> Result:
    """Parse a (BSMS-wrapped or plain) multisig descriptor into a MultisigConfig.

    Cosigners whose fingerprint matches one of local_fingerprints (case-insensitively) are marked
    local; key_ids optionally maps local fingerprints to the WalletKey ids that hold them.  Returns
    a Result with the MultisigConfig, or a DescriptorParseError.

    """
    local			= { normalize_fingerprint( fp ) for fp in local_fingerprints }
    key_ids			= { normalize_fingerprint( fp ): i for fp,i in ( key_ids or {} ).items() }
    extracted			= extract_descriptor( text )
    desc			= remove_checksum( extracted.descriptor )
    if not desc:
        return Result.failure( DescriptorParseError( "No descriptor found in the input" ))
    valid			= verify_checksum( extracted.descriptor )
    if valid is False:
        log.info( "Descriptor checksum does not match; ignoring it" )

    script_type			= script_type_of( desc )
    threshold			= THRESHOLD_PATTERN.search( desc )
    if not threshold:
        return Result.failure( DescriptorParseError( "Could not find the multisig threshold (eg. sortedmulti(2,...)) in the descriptor" ))
    m				= int( threshold.group( 1 ))

    cosigners			= []
    for match in KEY_PATTERN.finditer( desc ):
        fingerprint		= normalize_fingerprint( match.group( 1 ))
        is_local		= fingerprint in local
        cosigners.append( CosignerInfo(
            xpub		= match.group( 3 ),
            fingerprint		= fingerprint,
            derivation_path	= f"m{match.group( 2 ) or ''}",
            is_local		= is_local,
            key_id		= key_ids.get( fingerprint ) if is_local else None,
        ))
    n				= len( cosigners )
    if not cosigners:
        return Result.failure( DescriptorParseError( "No [fingerprint/path]xpub cosigner keys found; is the descriptor in standard format?" ))
    if m < 1:
        return Result.failure( DescriptorParseError( "Threshold must be at least 1" ))
    if m > n:
        return Result.failure( DescriptorParseError( f"Threshold ({m}) cannot be greater than the number of keys ({n})" ))
    local_cosigners		= [ c for c in cosigners if c.is_local ]
    if not local_cosigners:
        return Result.failure( DescriptorParseError(
            "None of the cosigner keys match your local keys; import the corresponding key first" ))

    config			= MultisigConfig(
        m			= m,
        n			= n,
        cosigners		= cosigners,
        local_key_fingerprints	= sorted( { c.fingerprint for c in local_cosigners } ),
        script_type		= script_type,
        raw_descriptor		= extracted.descriptor,
    )
    log.info( f"Parsed {m}-of-{n} {script_type.value} multisig descriptor with {len( local_cosigners )} local cosigner(s)" )
    return Result.success( config )


def multisig_descriptor( config: MultisigConfig ) -> str:
    """The checksummed wsh/sh(wsh/sh sortedmulti descriptor for a config's cosigners."""
    keys			= ','.join(
        f"[{c.fingerprint}{c.derivation_path[1:] if c.derivation_path.startswith( 'm/' ) else ''}]{c.xpub}/<0;1>/*"
        for c in config.cosigners
    )
    inner			= f"sortedmulti({config.m},{keys})"
    wrapped			= {
        MultisigScriptType.P2WSH:	f"wsh({inner})",
        MultisigScriptType.P2SH_P2WSH:	f"sh(wsh({inner}))",
        MultisigScriptType.P2SH:	f"sh({inner})",
    }[config.script_type]
    return append_checksum( wrapped )


#
# Multisig addresses
#
def cosigner_chains( config: MultisigConfig, change: int = 0 ) -> List[ExtendedKey]:
    """Each cosigner's receive (0) or change (1) chain node, in cosigner order."""
    return [ ExtendedKey.parse( c.xpub ).child( change ) for c in config.cosigners ]


def multisig_address( config: MultisigConfig, index: int = 0, change: int = 0 ) -> str:
    """The sortedmulti address of a config, at .../change/index of every cosigner."""
    pubkeys			= [ chain.child( index ).public_key for chain in cosigner_chains( config, change ) ]
    return script_multisig_address( config.script_type, config.m, pubkeys, testnet=config.is_testnet )


def multisig_addresses(
    config: MultisigConfig,
    count: int,
    change: int			= 0,
    start: int			= 0,
):
    """Yields ( "multisig/change/index", address ) for count addresses."""
    chains			= cosigner_chains( config, change )
    for index in range( start, start + count ):
        pubkeys			= [ chain.child( index ).public_key for chain in chains ]
        yield f"multisig/{change}/{index}", script_multisig_address( config.script_type, config.m, pubkeys, testnet=config.is_testnet )


def check_multisig_address(
    address: str,
    config: MultisigConfig,
    gap: int			= MULTISIG_SCAN_GAP,
) -> Optional[Tuple[int, int]]:
    """Scan the receive then change chains for address; returns ( change, index ), or None."""
    address			= address.strip()
    for change in ( 0, 1 ):
        for index, ( path, candidate ) in enumerate( multisig_addresses( config, gap, change=change )):
            if candidate == address:
                log.info( f"Multisig address {address} found at {path}" )
                return change, index
    return None


def verify_first_address( config: MultisigConfig, first_address: Optional[str] ) -> Optional[bool]:
    """Compare a BSMS verification address with the config's first receive address; None if the
    BSMS record supplied none.

    """
    if not first_address:
        return None
    derived			= multisig_address( config, 0, 0 )
    if derived != first_address.strip():
        log.warning( f"BSMS first address {first_address} does not match derived {derived}" )
        return False
    return True


def create_descriptor_record( config: MultisigConfig ) -> DescriptorRecord:
    """The BSMS 1.0 record for a multisig wallet: its checksummed descriptor, path restrictions and
    first receive address.

    """
    desc			= append_checksum( config.raw_descriptor ) if config.raw_descriptor else multisig_descriptor( config )
    return DescriptorRecord(
        version			= BSMS_VERSION,
        descriptor		= desc,
        path_restrictions	= extract_path_restrictions( desc ),
        first_address		= multisig_address( config, 0, 0 ),
    )
