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
import uuid

from dataclasses	import dataclass, field
from typing		import Iterator, List, Optional, Tuple, Union

import hdwallet

from .addresses		import address as script_address, p2tr_address
from .bip32		import ExtendedKey
from .bip39		import normalize_mnemonic, recover_bip39
from .defaults		import ADDRESS_COUNT, ADDRESS_SCAN_GAP
from .paths		import (
    account_path, multisig_path, normalize_path, is_testnet_path, script_type_for_path,
    with_account_number,
)
from .types		import CosignerInfo, MultisigScriptType, ScriptType, WalletKey, WalletMetadata
from .util		import commas

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )


class Account:
    """A single-signature Bitcoin HD wallet "Account", at some derivation path, based on
    meherett/python-hdwallet.  Provides the spend side: the private key (and WIF) and address of
    the current derivation path.

    | Script      | Path              | Address | Semantic       |
    |-------------+-------------------+---------+----------------|
    | P2PKH       | m/44'/  0'/0'/0/0 | 1...    | p2pkh          |
    | P2SH_P2WPKH | m/49'/  0'/0'/0/0 | 3...    | p2wpkh_in_p2sh |
    | P2WPKH      | m/84'/  0'/0'/0/0 | bc1q... | p2wpkh         |
    | P2TR        | m/86'/  0'/0'/0/0 | bc1p... | (BIP-86 tweak) |

    Testnet accounts use coin type 1' and the BTCTEST symbol (m/n..., 2..., tb1...).

    """
    CRYPTO_SYMBOLS		= dict(
        BTC		= 'Bitcoin',
        BTCTEST		= 'Bitcoin Testnet',
    )

    # python-hdwallet has no Taproot semantic; its P2TR addresses are produced here, and its
    # extended keys use the BIP-86 plain xpub/tpub version.
    SCRIPT_SEMANTIC		= {
        ScriptType.P2PKH:	"p2pkh",
        ScriptType.P2SH_P2WPKH:	"p2wpkh_in_p2sh",
        ScriptType.P2WPKH:	"p2wpkh",
        ScriptType.P2TR:	"p2pkh",
    }

    @classmethod
    def path_default( cls, script_type: ScriptType, testnet: bool = False, account: int = 0 ) -> str:
        return f"{account_path( ScriptType( script_type ).purpose, account, testnet )}/0/0"

    def __str__( self ):
        address			= None
        try:
            address		= self.address
        except ValueError:
            pass
        return f"{self.crypto}: {address}"

    def __repr__( self ):
        return f"{self.__class__.__name__}({self} @{self.path})"

    def __init__( self, script_type: Union[ScriptType,str] = ScriptType.P2WPKH, testnet: bool = False ):
        try:
            self.script_type	= ScriptType( script_type )
        except ValueError:
            raise ValueError( f"Script type {script_type!r} not supported; specify one of {commas( s.value for s in ScriptType )}" )
        self.testnet		= testnet
        self.hdwallet		= hdwallet.HDWallet(
            symbol	= 'BTCTEST' if testnet else 'BTC',
            semantic	= self.SCRIPT_SEMANTIC[self.script_type],
        )

    def from_seed( self, seed: bytes, path: Optional[str] = None ) -> Account:
        """Derive the Account from the supplied seed at path (default: the first receive address of
        account 0 for this script type).  Any prior derivation is forgotten.

        """
        self.hdwallet.clean_derivation()
        self.hdwallet.from_seed( bytes( seed ).hex() )
        return self.from_path( path )

    def from_mnemonic( self, mnemonic: str, path: Optional[str] = None, passphrase: Optional[Union[bytes,str]] = None ) -> Account:
        return self.from_seed( recover_bip39( mnemonic, passphrase=passphrase ), path=path )

    def from_path( self, path: Optional[str] = None ) -> Account:
        """Re-derive from the root seed along path.  Accepts ' or h hardened markers."""
        path			= normalize_path( path or self.path_default( self.script_type, self.testnet ))
        if is_testnet_path( path ) != self.testnet:
            log.warning( f"{self.crypto} account derived at {path}, with a mismatched coin type" )
        self.hdwallet.clean_derivation()
        if len( path ) > 2:
            self.hdwallet.from_path( path )
        return self

    @property
    def crypto( self ) -> str:
        return 'BTCTEST' if self.testnet else 'BTC'

    @property
    def name( self ) -> str:
        return self.CRYPTO_SYMBOLS[self.crypto]

    @property
    def path( self ) -> str:
        return self.hdwallet.path() or 'm/'

    @property
    def address( self ) -> str:
        """Returns the 1..., 3..., bc1q... or bc1p... address, depending on the script type"""
        if self.script_type is ScriptType.P2TR:
            return p2tr_address( self.public_key, testnet=self.testnet )
        return getattr( self.hdwallet, f"{self.SCRIPT_SEMANTIC[self.script_type]}_address" )()

    @property
    def public_key( self ) -> bytes:
        return bytes.fromhex( self.hdwallet.public_key() )

    @property
    def key( self ) -> str:
        return self.hdwallet.private_key()
    prvkey			= key

    @property
    def wif( self ) -> str:
        return self.hdwallet.wif()

    @property
    def xpubkey( self ) -> str:
        """The xpub/ypub/zpub (tpub/upub/vpub) of the current derivation path."""
        return self.hdwallet.xpublic_key()


def wallet_key(
    mnemonic: str,
    passphrase: Optional[Union[str,bytes]] = None,
    label: str			= "",
    key_id: Optional[str]	= None,
) -> WalletKey:
    """Produce a WalletKey (validating the mnemonic) whose seed has the passphrase (if any) applied."""
    mnemonic			= normalize_mnemonic( mnemonic )
    seed			= recover_bip39( mnemonic, passphrase=passphrase )
    master			= ExtendedKey.from_seed( seed )
    return WalletKey(
        key_id		= key_id or str( uuid.uuid4() ),
        mnemonic	= mnemonic,
        seed		= seed,
        fingerprint	= master.fingerprint.hex(),
        label		= label,
    )


# SLIP-132 (private, public) extended key versions, by script type and network
ACCOUNT_VERSIONS		= {
    ( ScriptType.P2PKH,		False ):	( 'xprv', 'xpub' ),
    ( ScriptType.P2SH_P2WPKH,	False ):	( 'yprv', 'ypub' ),
    ( ScriptType.P2WPKH,	False ):	( 'zprv', 'zpub' ),
    ( ScriptType.P2TR,		False ):	( 'xprv', 'xpub' ),
    ( ScriptType.P2PKH,		True ):		( 'tprv', 'tpub' ),
    ( ScriptType.P2SH_P2WPKH,	True ):		( 'uprv', 'upub' ),
    ( ScriptType.P2WPKH,	True ):		( 'vprv', 'vpub' ),
    ( ScriptType.P2TR,		True ):		( 'tprv', 'tpub' ),
}

MULTISIG_VERSIONS		= {
    ( MultisigScriptType.P2WSH,		False ):	'Zpub',
    ( MultisigScriptType.P2SH_P2WSH,	False ):	'Ypub',
    ( MultisigScriptType.P2SH,		False ):	'xpub',
    ( MultisigScriptType.P2WSH,		True ):		'Vpub',
    ( MultisigScriptType.P2SH_P2WSH,	True ):		'Upub',
    ( MultisigScriptType.P2SH,		True ):		'tpub',
}


@dataclass
class AccountKeys:
    """The account-level node of a wallet, both spend (xprv) and watch-only (xpub) branches."""
    path: str
    fingerprint: str
    script_type: ScriptType
    testnet: bool
    xprv: str			= field( repr=False )
    xpub: str

    def public_node( self, change: int, index: int ) -> ExtendedKey:
        return ExtendedKey.parse( self.xpub ).derive( f"{change}/{index}" )

    def private_node( self, change: int, index: int ) -> ExtendedKey:
        return ExtendedKey.parse( self.xprv ).derive( f"{change}/{index}" )

    def address( self, change: int = 0, index: int = 0 ) -> str:
        return script_address( self.script_type, self.public_node( change, index ).public_key, self.testnet )

    def address_path( self, change: int = 0, index: int = 0 ) -> str:
        return f"{self.path}/{change}/{index}"


def wallet_seed( key: WalletKey, metadata: WalletMetadata, passphrase: Optional[str] = None ) -> bytes:
    """The seed for a wallet; a wallet whose key was stored passphrase-less requires the passphrase."""
    if not metadata.has_passphrase:
        return key.seed
    if passphrase is None:
        raise ValueError( f"Wallet {metadata.name!r} requires its BIP-39 passphrase" )
    return recover_bip39( key.mnemonic, passphrase=passphrase )


def derive_account_keys( seed: bytes, path: str ) -> AccountKeys:
    path			= normalize_path( path )
    script_type			= ScriptType( script_type_for_path( path ))
    testnet			= is_testnet_path( path )
    prv, pub			= ACCOUNT_VERSIONS[script_type, testnet]
    master			= ExtendedKey.from_seed( seed, version=prv )
    node			= master.derive( path )
    return AccountKeys(
        path		= path,
        fingerprint	= master.fingerprint.hex(),
        script_type	= script_type,
        testnet		= testnet,
        xprv		= node.serialize( prv ),
        xpub		= node.neuter().serialize( pub ),
    )


def derive_wallet_keys( key: WalletKey, metadata: WalletMetadata, passphrase: Optional[str] = None ) -> AccountKeys:
    """The account keys at the wallet's active derivation path."""
    return derive_account_keys( wallet_seed( key, metadata, passphrase ), metadata.active_derivation_path )


def wallet_account(
    key: WalletKey,
    metadata: WalletMetadata,
    change: int			= 0,
    index: int			= 0,
    passphrase: Optional[str]	= None,
) -> Account:
    """The spendable Account for one address of a wallet."""
    path			= metadata.active_derivation_path
    return Account(
        script_type	= script_type_for_path( path ),
        testnet		= is_testnet_path( path ),
    ).from_seed( wallet_seed( key, metadata, passphrase ), path=f"{path}/{change}/{index}" )


def generate_addresses(
    keys: AccountKeys,
    count: int			= ADDRESS_COUNT,
    change: int			= 0,
    start: int			= 0,
) -> Iterator[Tuple[str, str]]:
    """Yields ( path, address ) for count addresses of the receive (0) or change (1) chain, via
    watch-only (xpub) derivation.

    """
    chain			= ExtendedKey.parse( keys.xpub ).child( change )
    for index in range( start, start + count ):
        pubkey			= chain.child( index ).public_key
        yield keys.address_path( change, index ), script_address( keys.script_type, pubkey, keys.testnet )


def check_address(
    keys: AccountKeys,
    address: str,
    gap: int			= ADDRESS_SCAN_GAP,
) -> Optional[Tuple[int, int]]:
    """Scan the receive chain then the change chain (gap addresses each) for address; returns the
    ( change, index ) at which it is found, or None.

    """
    address			= address.strip()
    for change in ( 0, 1 ):
        for index, ( _, candidate ) in enumerate( generate_addresses( keys, count=gap, change=change )):
            if candidate == address:
                log.info( f"Address {address} found at {keys.address_path( change, index )}" )
                return change, index
    return None


def multisig_cosigner(
    key: WalletKey,
    script_type: MultisigScriptType	= MultisigScriptType.P2WSH,
    account: int			= 0,
    testnet: bool			= False,
    version: Optional[str]		= None,
) -> CosignerInfo:
    """Export a local key as a BIP-48 multisig cosigner: the m/48'/coin'/account'/script' node, in
    SLIP-132 Zpub/Ypub (Vpub/Upub) form unless another version (eg. 'xpub') is requested.

    """
    script_type			= MultisigScriptType( script_type )
    path			= multisig_path( script_type.value, account, testnet )
    node			= ExtendedKey.from_seed( key.seed ).derive( path )
    return CosignerInfo(
        xpub		= node.neuter().serialize( version or MULTISIG_VERSIONS[script_type, testnet] ),
        fingerprint	= key.fingerprint,
        derivation_path	= path,
        is_local	= True,
        key_id		= key.key_id,
    )


def key_origin( cosigner: CosignerInfo ) -> str:
    """The descriptor key expression [fingerprint/48'/0'/0'/2']xpub..."""
    origin			= cosigner.derivation_path
    if origin.startswith( 'm/' ):
        origin			= origin[1:]
    elif origin == 'm':
        origin			= ''
    return f"[{cosigner.fingerprint}{origin}]{cosigner.xpub}"


def account_keys_list( key: WalletKey, metadata: WalletMetadata, passphrase: Optional[str] = None ) -> List[AccountKeys]:
    """Account keys for every account of a single-signature wallet, in account order."""
    seed			= wallet_seed( key, metadata, passphrase )
    return [
        derive_account_keys( seed, with_account_number( metadata.derivation_path, account ))
        for account in sorted( set( metadata.accounts ))
    ]
