import pytest

from .addresses		import (
    _segwit_address, address, multisig_address, multisig_script, op_n, p2pkh_address, p2sh_p2wpkh_address,
    p2tr_address, p2wpkh_address, p2wsh_address, push, taproot_output_key,
)
from .bip32		import ExtendedKey, hash160
from .types		import MultisigScriptType, ScriptType

SEED_ABANDON			= bytes.fromhex(
    "5eb00bbddcf069084889a8ab9155568165f5c453ccb85e70811aaed6f6da5fc1"
    "9a5ac40b389cd370d086206dec8aa6c43daea6690f20ad3d8d48b2d2ce9e38e4"
)
# The secp256k1 generator point G
PUBKEY_G			= bytes.fromhex( "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798" )


def pubkey_at( path ):
    return ExtendedKey.from_seed( SEED_ABANDON ).derive( path ).public_key


@pytest.mark.parametrize( "script_type, path, expected", [
    ( ScriptType.P2PKH,		"m/44'/0'/0'/0/0",	"1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA" ),
    ( ScriptType.P2SH_P2WPKH,	"m/49'/0'/0'/0/0",	"37VucYSaXLCAsxYyAPfbSi9eh4iEcbShgf" ),
    ( ScriptType.P2WPKH,	"m/84'/0'/0'/0/0",	"bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu" ),
    ( ScriptType.P2TR,		"m/86'/0'/0'/0/0",	"bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr" ),
] )
def test_single_sig_addresses( script_type, path, expected ):
    assert address( script_type, pubkey_at( path )) == expected
    assert address( script_type.value, pubkey_at( path )) == expected


def test_single_sig_testnet():
    pubkey			= pubkey_at( "m/84'/1'/0'/0/0" )
    assert p2wpkh_address( pubkey, testnet=True ).startswith( "tb1q" )
    assert p2pkh_address( pubkey, testnet=True )[0] in "mn"
    assert p2sh_p2wpkh_address( pubkey, testnet=True ).startswith( "2" )
    assert p2tr_address( pubkey, testnet=True ).startswith( "tb1p" )


def test_taproot_output_key():
    # BIP-86 m/86'/0'/0'/0/0
    pubkey			= pubkey_at( "m/86'/0'/0'/0/0" )
    assert pubkey[1:].hex() == "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115"
    assert taproot_output_key( pubkey ).hex() == "a60869f0dbcf1dc659c9cecbaf8050135ea9e8cdc487053f1dc6880949dc684c"
    assert taproot_output_key( pubkey[1:] ) == taproot_output_key( pubkey )
    with pytest.raises( ValueError ):
        taproot_output_key( bytes( 31 ))


def test_p2wsh_bip173():
    # BIP-173: P2WSH of <G> OP_CHECKSIG
    script			= push( PUBKEY_G ) + b'\xac'
    assert p2wsh_address( script ) == "bc1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3qccfmv3"
    assert p2wsh_address( script, testnet=True ) == "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"


def test_segwit_bech32m_bip350():
    # BIP-350: witness v1 programs are bech32m; v0 remain bech32
    program			= PUBKEY_G[1:]
    assert _segwit_address( 1, program, False ) == "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"
    assert _segwit_address( 0, hash160( PUBKEY_G ), False ) == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
    with pytest.raises( ValueError ):
        _segwit_address( 0, bytes( 25 ), False )
    with pytest.raises( ValueError ):
        _segwit_address( 17, program, False )


def test_script_primitives():
    assert op_n( 0 ) == 0x00
    assert op_n( 1 ) == 0x51
    assert op_n( 16 ) == 0x60
    with pytest.raises( ValueError ):
        op_n( 17 )
    assert push( b'\x01' * 75 )[:1] == b'\x4b'
    assert push( b'\x01' * 76 )[:2] == b'\x4c\x4c'
    assert push( b'\x01' * 300 )[:3] == b'\x4d\x2c\x01'


def test_multisig_script():
    keys			= [ pubkey_at( f"m/48'/0'/{i}'/2'/0/0" ) for i in range( 3 ) ]
    script			= multisig_script( 2, keys )
    assert script[0] == 0x52 and script[-2:] == b'\x53\xae'
    assert len( script ) == 1 + 3 * 34 + 2
    # sortedmulti: the order of the supplied keys is irrelevant
    assert multisig_script( 2, list( reversed( keys ))) == script
    assert multisig_script( 2, sorted( keys ), sort=False ) == script
    with pytest.raises( ValueError ):
        multisig_script( 4, keys )
    with pytest.raises( ValueError ):
        multisig_script( 0, keys )
    with pytest.raises( ValueError ):
        multisig_script( 1, [ keys[0][1:] ] )

    assert multisig_address( MultisigScriptType.P2WSH, 2, keys ).startswith( "bc1q" )
    assert len( multisig_address( MultisigScriptType.P2WSH, 2, keys )) == 62
    assert multisig_address( MultisigScriptType.P2SH_P2WSH, 2, keys ).startswith( "3" )
    assert multisig_address( MultisigScriptType.P2SH, 2, keys ).startswith( "3" )
    assert multisig_address( "P2WSH", 2, keys, testnet=True ).startswith( "tb1q" )
    assert multisig_address( MultisigScriptType.P2WSH, 2, reversed( keys )) == multisig_address( MultisigScriptType.P2WSH, 2, keys )
