import pytest

from .api		import multisig_cosigner, wallet_key
from .descriptor	import (
    BSMS_VERSION, NO_PATH_RESTRICTIONS, STANDARD_PATH_RESTRICTIONS, DescriptorRecord, append_checksum,
    check_multisig_address, create_descriptor_record, descriptor_checksum, extract_descriptor,
    extract_path_restrictions, format_descriptor, multisig_address, multisig_addresses,
    multisig_descriptor, parse_descriptor, remove_checksum, script_type_of, verify_checksum,
    verify_first_address,
)
from .errors		import DescriptorParseError
from .types		import MultisigConfig, MultisigScriptType

BIP39_ABANDON			= "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
BIP39_ZOO			= "zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo wrong"
BIP39_LEGAL			= "legal winner thank year wave sausage worth useful legal winner thank yellow"

ABANDON				= wallet_key( BIP39_ABANDON )
ZOO				= wallet_key( BIP39_ZOO )
LEGAL				= wallet_key( BIP39_LEGAL )


def descriptor_of( keys, m=2, wrapper="wsh({})", testnet=True, suffix="/<0;1>/*" ):
    exprs			= []
    for key in keys:
        c			= multisig_cosigner( key, testnet=testnet, version='tpub' if testnet else 'xpub' )
        exprs.append( f"[{c.fingerprint}{c.derivation_path[1:]}]{c.xpub}{suffix}" )
    return append_checksum( wrapper.format( f"sortedmulti({m},{','.join( exprs )})" ))


def test_descriptor_checksum():
    assert descriptor_checksum( "raw(deadbeef)" ) == "89f8spxm"
    assert append_checksum( "raw(deadbeef)" ) == "raw(deadbeef)#89f8spxm"
    assert append_checksum( "raw(deadbeef)#00000000" ) == "raw(deadbeef)#89f8spxm"
    assert remove_checksum( " raw(deadbeef)#89f8spxm " ) == "raw(deadbeef)"
    assert verify_checksum( "raw(deadbeef)#89f8spxm" ) is True
    assert verify_checksum( "raw(deadbeef)#89f8spxx" ) is False
    assert verify_checksum( "raw(deadbeef)" ) is None
    with pytest.raises( ValueError ):
        descriptor_checksum( "raw(deadébeef)" )


def test_script_type_of():
    assert script_type_of( "wsh(sortedmulti(...))" ) is MultisigScriptType.P2WSH
    assert script_type_of( "sh(wsh(sortedmulti(...)))" ) is MultisigScriptType.P2SH_P2WSH
    assert script_type_of( "SH(sortedmulti(...))" ) is MultisigScriptType.P2SH


def test_parse_descriptor():
    desc			= descriptor_of( [ ABANDON, ZOO, LEGAL ] )
    res				= parse_descriptor( desc, [ ABANDON.fingerprint.upper() ], key_ids={ ABANDON.fingerprint: ABANDON.key_id } )
    assert res.ok, res.error
    config			= res.value
    assert ( config.m, config.n ) == ( 2, 3 )
    assert config.script_type is MultisigScriptType.P2WSH
    assert config.is_testnet
    assert config.raw_descriptor == desc
    assert config.local_key_fingerprints == [ ABANDON.fingerprint ]
    assert [ c.fingerprint for c in config.cosigners ] == [ ABANDON.fingerprint, ZOO.fingerprint, LEGAL.fingerprint ]
    assert [ c.is_local for c in config.cosigners ] == [ True, False, False ]
    assert config.cosigners[0].key_id == ABANDON.key_id
    assert config.cosigners[1].key_id is None
    assert all( c.derivation_path == "m/48'/1'/0'/2'" for c in config.cosigners )
    assert all( c.xpub.startswith( "tpub" ) for c in config.cosigners )

    # A bad checksum is tolerated
    assert parse_descriptor( desc[:-1] + ( 'q' if desc[-1] != 'q' else 'p' ), [ ABANDON.fingerprint ] ).ok
    # ... as is a missing checksum, and a plain /* wildcard
    assert parse_descriptor( remove_checksum( desc ), [ ZOO.fingerprint ] ).ok
    assert parse_descriptor( descriptor_of( [ ABANDON, ZOO ], m=1, suffix="/*" ), [ ZOO.fingerprint ] ).value.n == 2

    nested			= parse_descriptor( descriptor_of( [ ABANDON, ZOO ], wrapper="sh(wsh({}))" ), [ ABANDON.fingerprint ] )
    assert nested.value.script_type is MultisigScriptType.P2SH_P2WSH


@pytest.mark.parametrize( "text, reason", [
    ( "",									"No descriptor" ),
    ( "wsh(pk([73c5da0a/48'/1'/0'/2']tpubXYZ))",				"threshold" ),
    ( "wsh(sortedmulti(2,xpubABC,xpubDEF))",				"No [fingerprint/path]xpub" ),
] )
def test_parse_descriptor_errors( text, reason ):
    res				= parse_descriptor( text, [ ABANDON.fingerprint ] )
    assert not res.ok
    assert isinstance( res.error, DescriptorParseError )
    assert reason in str( res.error )


def test_parse_descriptor_thresholds():
    res				= parse_descriptor( descriptor_of( [ ABANDON, ZOO ], m=3 ), [ ABANDON.fingerprint ] )
    assert "cannot be greater" in str( res.error )
    res				= parse_descriptor( descriptor_of( [ ABANDON, ZOO ], m=0 ), [ ABANDON.fingerprint ] )
    assert "at least 1" in str( res.error )
    res				= parse_descriptor( descriptor_of( [ ABANDON, ZOO ] ), [ LEGAL.fingerprint ] )
    assert "None of the cosigner keys" in str( res.error )


def test_extract_descriptor():
    desc			= descriptor_of( [ ABANDON, ZOO ] )
    plain			= extract_descriptor( f"\n# exported\n{desc}\n" )
    assert plain == ( desc, None, None, False )

    bsms			= extract_descriptor( "\n".join( [ BSMS_VERSION, desc, STANDARD_PATH_RESTRICTIONS, "tb1qexampleaddressxxxxxxxxxxxxxxxxxxxxx" ] ))
    assert bsms.is_bsms
    assert bsms.descriptor == desc
    assert bsms.path_restrictions == STANDARD_PATH_RESTRICTIONS
    assert bsms.first_address == "tb1qexampleaddressxxxxxxxxxxxxxxxxxxxxx"

    bsms			= extract_descriptor( "\n".join( [ BSMS_VERSION, desc, NO_PATH_RESTRICTIONS.upper() ] ))
    assert bsms.path_restrictions == NO_PATH_RESTRICTIONS
    assert bsms.first_address is None

    assert extract_descriptor( "BSMS 1.0\nnothing useful" ).descriptor == ''


def test_extract_path_restrictions():
    assert extract_path_restrictions( "wsh(sortedmulti(1,[00000000/48'/0'/0'/2']xpubA/<0;1>/*))" ) == "/0/*,/1/*"
    assert extract_path_restrictions( "wsh(sortedmulti(1,[00000000/48'/0'/0'/2']xpubA/<0;1;2>/*))" ) == "/0/*,/1/*,/2/*"
    assert extract_path_restrictions( "wsh(sortedmulti(1,[00000000/48'/0'/0'/2']xpubA/0/*))" ) == STANDARD_PATH_RESTRICTIONS
    assert extract_path_restrictions( "wsh(sortedmulti(1,[00000000/48'/0'/0'/2']xpubA/0/5))" ) == NO_PATH_RESTRICTIONS


def test_multisig_addresses():
    config			= parse_descriptor( descriptor_of( [ ABANDON, ZOO, LEGAL ] ), [ ABANDON.fingerprint ] ).value
    first			= multisig_address( config )
    assert first.startswith( "tb1q" ) and len( first ) == 62
    addresses			= list( multisig_addresses( config, 3 ))
    assert addresses[0] == ( "multisig/0/0", first )
    assert len( set( a for _,a in addresses )) == 3
    change			= list( multisig_addresses( config, 2, change=1 ))
    assert change[1][0] == "multisig/1/1"
    assert check_multisig_address( addresses[2][1], config, gap=5 ) == ( 0, 2 )
    assert check_multisig_address( change[1][1], config, gap=5 ) == ( 1, 1 )
    assert check_multisig_address( "tb1qnotfound", config, gap=5 ) is None

    # The cosigner order in the descriptor does not affect the sortedmulti addresses
    reordered			= parse_descriptor( descriptor_of( [ LEGAL, ZOO, ABANDON ] ), [ ABANDON.fingerprint ] ).value
    assert multisig_address( reordered ) == first

    assert verify_first_address( config, first ) is True
    assert verify_first_address( config, addresses[1][1] ) is False
    assert verify_first_address( config, None ) is None

    mainnet			= parse_descriptor( descriptor_of( [ ABANDON, ZOO ], testnet=False ), [ ABANDON.fingerprint ] ).value
    assert not mainnet.is_testnet
    assert multisig_address( mainnet ).startswith( "bc1q" )


def test_descriptor_record():
    desc			= descriptor_of( [ ABANDON, ZOO ] )
    config			= parse_descriptor( desc, [ ABANDON.fingerprint ] ).value
    record			= create_descriptor_record( config )
    assert record == DescriptorRecord( BSMS_VERSION, desc, STANDARD_PATH_RESTRICTIONS, multisig_address( config ))
    text			= format_descriptor( record )
    assert text.splitlines()[0] == "BSMS 1.0"

    # A BSMS record re-imports to the same wallet, and its first address verifies
    again			= parse_descriptor( text, [ ZOO.fingerprint ] ).value
    assert [ c.xpub for c in again.cosigners ] == [ c.xpub for c in config.cosigners ]
    assert verify_first_address( again, extract_descriptor( text ).first_address ) is True

    # Without the raw descriptor, one is synthesized from the cosigners
    synthesized			= MultisigConfig( m=config.m, n=config.n, cosigners=config.cosigners, script_type=config.script_type )
    regenerated			= multisig_descriptor( synthesized )
    assert verify_checksum( regenerated ) is True
    assert remove_checksum( regenerated ) == remove_checksum( desc )
    assert create_descriptor_record( synthesized ).first_address == record.first_address
