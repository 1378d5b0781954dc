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
import time

from dataclasses	import dataclass, field, replace
from enum		import Enum
from typing		import Dict, List, Optional, Tuple

from .defaults		import METADATA_SCHEMA, ACCOUNT_LABEL_PREFIX
from .paths		import with_account_number, is_testnet_path, is_testnet_xkey

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )


class ScriptType( Enum ):
    """Single-signature address types, and their BIP purpose."""
    P2PKH		= "P2PKH"		# BIP-44, 1...
    P2SH_P2WPKH		= "P2SH_P2WPKH"		# BIP-49, 3...
    P2WPKH		= "P2WPKH"		# BIP-84, bc1q...
    P2TR		= "P2TR"		# BIP-86, bc1p...

    @property
    def purpose( self ) -> int:
        return {
            ScriptType.P2PKH:		44,
            ScriptType.P2SH_P2WPKH:	49,
            ScriptType.P2WPKH:		84,
            ScriptType.P2TR:		86,
        }[self]


class MultisigScriptType( Enum ):
    P2WSH		= "P2WSH"		# wsh(sortedmulti(...))
    P2SH_P2WSH		= "P2SH_P2WSH"		# sh(wsh(sortedmulti(...)))
    P2SH		= "P2SH"		# sh(sortedmulti(...))


def normalize_fingerprint( fingerprint: str ) -> str:
    return ( fingerprint or '' ).strip().lower()


@dataclass
class WalletKey:
    """A BIP-39 seed, held as a shared entity that any number of wallets may reference by key_id.
    The seed is the 64-byte BIP-39 output (any passphrase already applied), and fingerprint is the
    first 4 bytes of HASH160 of its master public key.

    """
    key_id: str
    mnemonic: str		= field( repr=False )
    seed: bytes			= field( repr=False )
    fingerprint: str		= ""
    label: str			= ""

    def __post_init__( self ):
        self.fingerprint	= normalize_fingerprint( self.fingerprint )
        self.seed		= bytes( self.seed )

    def to_json( self ) -> str:
        return json.dumps( dict(
            keyId	= self.key_id,
            mnemonic	= self.mnemonic,
            bip39Seed	= self.seed.hex(),
            fingerprint	= self.fingerprint,
            label	= self.label,
        ))

    @classmethod
    def from_json( cls, text: str ) -> WalletKey:
        obj			= json.loads( text )
        return cls(
            key_id	= obj['keyId'],
            mnemonic	= obj['mnemonic'],
            seed	= bytes.fromhex( obj['bip39Seed'] ),
            fingerprint	= obj.get( 'fingerprint', '' ),
            label	= obj.get( 'label', '' ),
        )


@dataclass
class CosignerInfo:
    xpub: str
    fingerprint: str
    derivation_path: str	= ""
    is_local: bool		= False
    key_id: Optional[str]	= None

    def __post_init__( self ):
        self.fingerprint	= normalize_fingerprint( self.fingerprint )

    def to_dict( self ) -> dict:
        return dict(
            xpub		= self.xpub,
            fingerprint		= self.fingerprint,
            derivationPath	= self.derivation_path,
            isLocal		= self.is_local,
            keyId		= self.key_id,
        )

    @classmethod
    def from_dict( cls, obj: dict ) -> CosignerInfo:
        return cls(
            xpub		= obj['xpub'],
            fingerprint		= obj['fingerprint'],
            derivation_path	= obj.get( 'derivationPath', '' ),
            is_local		= bool( obj.get( 'isLocal', False )),
            key_id		= obj.get( 'keyId' ) or None,
        )


@dataclass
class MultisigConfig:
    m: int
    n: int
    cosigners: List[CosignerInfo]
    local_key_fingerprints: List[str]	= field( default_factory=list )
    script_type: MultisigScriptType	= MultisigScriptType.P2WSH
    raw_descriptor: str			= ""

    def __post_init__( self ):
        if not ( 1 <= self.m <= self.n == len( self.cosigners )):
            raise ValueError( f"Invalid {self.m}-of-{self.n} multisig with {len( self.cosigners )} cosigners" )
        self.local_key_fingerprints = [ normalize_fingerprint( fp ) for fp in self.local_key_fingerprints ]

    @property
    def is_testnet( self ) -> bool:
        return any(
            is_testnet_xkey( c.xpub ) or is_testnet_path( c.derivation_path )
            for c in self.cosigners
        )

    @property
    def local_cosigners( self ) -> List[CosignerInfo]:
        return [ c for c in self.cosigners if c.is_local ]

    def to_dict( self ) -> dict:
        return dict(
            m			= self.m,
            n			= self.n,
            cosigners		= [ c.to_dict() for c in self.cosigners ],
            localKeyFingerprints = list( self.local_key_fingerprints ),
            scriptType		= self.script_type.value,
            rawDescriptor	= self.raw_descriptor,
        )

    @classmethod
    def from_dict( cls, obj: dict ) -> MultisigConfig:
        return cls(
            m			= int( obj['m'] ),
            n			= int( obj['n'] ),
            cosigners		= [ CosignerInfo.from_dict( c ) for c in obj['cosigners'] ],
            local_key_fingerprints = list( obj.get( 'localKeyFingerprints', [] )),
            script_type		= MultisigScriptType( obj.get( 'scriptType', MultisigScriptType.P2WSH.value )),
            raw_descriptor	= obj.get( 'rawDescriptor', '' ),
        )


def now_ms() -> int:
    return int( time.time() * 1000 )


@dataclass
class WalletMetadata:
    """Non-secret wallet description.  A single-signature wallet references exactly one WalletKey;
    a multisig wallet references only those cosigner keys held locally (perhaps none).

    has_passphrase means the referenced seed was stored without the BIP-39 passphrase applied, so
    one must be supplied each time the wallet is opened.

    """
    id: str
    name: str
    derivation_path: str			= "m/84'/0'/0'"
    master_fingerprint: str			= ""
    has_passphrase: bool			= False
    created_at: int				= field( default_factory=now_ms )
    accounts: List[int]				= field( default_factory=lambda: [0] )
    active_account_number: int			= 0
    account_names: Dict[int,str]		= field( default_factory=dict )
    is_multisig: bool				= False
    multisig_config: Optional[MultisigConfig]	= None
    key_ids: List[str]				= field( default_factory=list )

    def __post_init__( self ):
        self.master_fingerprint	= normalize_fingerprint( self.master_fingerprint )

    def account_display_name( self, account: Optional[int] = None ) -> str:
        account			= self.active_account_number if account is None else account
        return self.account_names.get( account ) or f"{ACCOUNT_LABEL_PREFIX} {account}"

    @property
    def active_derivation_path( self ) -> str:
        if self.is_multisig:
            return self.derivation_path
        return with_account_number( self.derivation_path, self.active_account_number )

    @property
    def is_testnet( self ) -> bool:
        if self.multisig_config:
            return self.multisig_config.is_testnet
        return is_testnet_path( self.derivation_path )

    def evolve( self, **changes ) -> WalletMetadata:
        """A modified copy; the original is left untouched."""
        return replace( self, **changes )

    def to_json( self ) -> str:
        return json.dumps( dict(
            schema		= METADATA_SCHEMA,
            id			= self.id,
            name		= self.name,
            derivationPath	= self.derivation_path,
            masterFingerprint	= self.master_fingerprint,
            hasPassphrase	= self.has_passphrase,
            createdAt		= self.created_at,
            accounts		= sorted( set( self.accounts )),
            activeAccountNumber	= self.active_account_number,
            accountNames	= { str( a ): n for a,n in sorted( self.account_names.items() ) },
            isMultisig		= self.is_multisig,
            multisigConfig	= self.multisig_config.to_dict() if self.multisig_config else None,
            keyIds		= list( self.key_ids ),
        ))


#
# WalletMetadata JSON schemas, sniffed from explicit structural markers:
#
#   1: Legacy; carries "savePassphraseLocally", and "hasPassphrase" meant "a passphrase was used"
#   2: No "schema" field, no "savePassphraseLocally"; "hasPassphrase" has its current meaning
#   3: Explicit "schema": 3
#
# Decoding first selects the schema, then decodes into that schema's variant, which is then folded
# into the current WalletMetadata.
#
@dataclass
class MetadataV1:
    common: dict
    has_passphrase: bool
    save_passphrase_locally: bool

    def fold( self ) -> WalletMetadata:
        # Historical mapping: only a passphrase that was *not* saved locally must be prompted for
        return WalletMetadata(
            has_passphrase	= self.has_passphrase and not self.save_passphrase_locally,
            **self.common
        )


@dataclass
class MetadataV2:
    common: dict
    has_passphrase: bool

    def fold( self ) -> WalletMetadata:
        return WalletMetadata( has_passphrase=self.has_passphrase, **self.common )


def metadata_schema( obj: dict ) -> int:
    if 'schema' in obj:
        return int( obj['schema'] )
    if 'savePassphraseLocally' in obj:
        return 1
    return 2


def _metadata_common( obj: dict ) -> dict:
    multisig			= obj.get( 'multisigConfig' )
    return dict(
        id			= obj['id'],
        name			= obj['name'],
        derivation_path		= obj.get( 'derivationPath', "m/84'/0'/0'" ),
        master_fingerprint	= obj.get( 'masterFingerprint', '' ),
        created_at		= int( obj.get( 'createdAt', 0 )),
        accounts		= [ int( a ) for a in obj.get( 'accounts' ) or [0] ],
        active_account_number	= int( obj.get( 'activeAccountNumber', 0 )),
        account_names		= { int( a ): n for a,n in ( obj.get( 'accountNames' ) or {} ).items() },
        is_multisig		= bool( obj.get( 'isMultisig', False )),
        multisig_config		= MultisigConfig.from_dict( multisig ) if multisig else None,
        key_ids			= list( obj.get( 'keyIds' ) or [] ),
    )


def decode_metadata_variant( obj: dict ):
    schema			= metadata_schema( obj )
    if schema == 1:
        return MetadataV1(
            common		= _metadata_common( obj ),
            has_passphrase	= bool( obj.get( 'hasPassphrase', False )),
            save_passphrase_locally = bool( obj.get( 'savePassphraseLocally', True )),
        )
    if schema in ( 2, METADATA_SCHEMA ):
        return MetadataV2(
            common		= _metadata_common( obj ),
            has_passphrase	= bool( obj.get( 'hasPassphrase', False )),
        )
    raise ValueError( f"Unsupported WalletMetadata schema {schema}" )


def decode_metadata( text: str ) -> Tuple[int, WalletMetadata]:
    """Returns the WalletMetadata and the schema it was stored in; a schema older than
    METADATA_SCHEMA should be re-saved.  Raises ValueError/KeyError on malformed JSON.

    """
    obj				= json.loads( text )
    schema			= metadata_schema( obj )
    return schema, decode_metadata_variant( obj ).fold()
