import json

import pytest

from .api		import generate_addresses, multisig_cosigner, wallet_key
from .defaults		import KEY_MIGRATION_VERSION, PREFIX_WALLET_KEY, PREFIX_WALLET_SECRETS
from .descriptor	import BSMS_VERSION, append_checksum, extract_descriptor, multisig_address, parse_descriptor
from .errors		import (
    AuthenticationFailed, DescriptorParseError, LockedOut, PasswordPolicyError, ReferentialViolation,
    SessionInactive, StorageWriteFailed, VaultError, WalletNotFound,
)
from .migration		import MigrationEngine
from .repository	import MetadataRepository
from .session		import SessionKeyManager
from .store		import MemoryStore
from .types		import ScriptType, WalletMetadata
from .vault		import DECOY, MAIN, Vault

ITERATIONS			= 1000

BIP39_ABANDON			= "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
BIP39_ZOO			= "zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo wrong"
BIP39_LEGAL			= "legal winner thank year wave sausage worth useful legal winner thank yellow"
BIP84_ZPUB			= "zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAcvPhXNfE3EfH1r1ADqtfSdVCToUG868RvUUkgDKf31mGDtKsAYz2oz2AGutZYs"


class Clock:
    def __init__( self, now=1_700_000_000.0 ):
        self.now		= now

    def __call__( self ):
        return self.now

    def advance( self, seconds ):
        self.now	       += seconds


def new_vault( password="main password", decoy=None, clock=None ):
    vault			= Vault(
        main_store	= MemoryStore(),
        decoy_store	= MemoryStore(),
        attempts_store	= MemoryStore(),
        iterations	= ITERATIONS,
        clock		= clock or Clock(),
    )
    assert vault.set_password( password ).ok
    if decoy:
        assert vault.set_password( decoy, DECOY ).ok
    return vault


def multisig_text( mnemonics, m=2, bsms=False, first_address=None ):
    exprs			= []
    for mnemonic in mnemonics:
        c			= multisig_cosigner( wallet_key( mnemonic ), testnet=True, version='tpub' )
        exprs.append( f"[{c.fingerprint}{c.derivation_path[1:]}]{c.xpub}/<0;1>/*" )
    desc			= append_checksum( f"wsh(sortedmulti({m},{','.join( exprs )}))" )
    if not bsms:
        return desc
    lines			= [ BSMS_VERSION, desc, "/0/*,/1/*" ]
    if first_address:
        lines.append( first_address )
    return '\n'.join( lines )


def test_vault_passwords():
    vault			= Vault( MemoryStore(), iterations=ITERATIONS )
    assert not vault.has_password()
    assert isinstance( vault.set_password( "" ).error, PasswordPolicyError )
    res				= vault.set_password( "pw", DECOY )
    assert "No decoy identity" in str( res.error )
    assert vault.set_password( "pw" ).value == MAIN
    assert vault.has_password()
    assert "already set" in str( vault.set_password( "other" ).error )

    vault			= new_vault()
    assert "cannot match" in str( vault.set_password( "main password", DECOY ).error )
    assert vault.set_password( "decoy password", DECOY ).ok
    assert vault.has_password( DECOY )

    vault			= Vault( MemoryStore(), decoy_store=MemoryStore(), iterations=ITERATIONS )
    assert "before the decoy" in str( vault.set_password( "decoy", DECOY ).error )


def test_vault_unlock_and_lockout():
    clock			= Clock()
    vault			= new_vault( clock=clock )

    res				= vault.unlock( "wrong" )
    assert isinstance( res.error, AuthenticationFailed )
    assert vault.remaining_lockout_time() == 0
    res				= vault.unlock( "wrong again" )
    assert isinstance( res.error, AuthenticationFailed )
    assert vault.remaining_lockout_time() == 30 * 1000

    # Even the correct password is refused while locked out
    res				= vault.unlock( "main password" )
    assert isinstance( res.error, LockedOut )
    assert res.error.remaining == 30 * 1000

    clock.advance( 30 )
    res				= vault.unlock( "main password" )
    assert res.ok
    assert vault.attempts.failed_attempts == 0
    with res.value as session:
        assert session.identity == MAIN
        assert session.is_active
    assert not session.is_active
    assert session not in vault.sessions


def test_vault_decoy_isolation():
    vault			= new_vault( decoy="decoy password" )
    with vault.unlock( "main password" ).unwrap() as main:
        main.add_key( BIP39_ABANDON ).unwrap()
    with vault.unlock( "decoy password" ).unwrap() as decoy:
        assert decoy.identity == DECOY
        assert decoy.keys.load_all() == []
        decoy.add_key( BIP39_ZOO ).unwrap()
    with vault.unlock( "main password" ).unwrap() as main:
        assert [ k.mnemonic for k in main.keys.load_all() ] == [ BIP39_ABANDON ]


def test_vault_keys():
    vault			= new_vault()
    session			= vault.unlock( "main password" ).unwrap()
    first			= session.add_key( BIP39_ABANDON ).unwrap()
    assert first.label == "Key 1"
    assert first.fingerprint == "73c5da0a"
    # The same seed is not stored twice
    assert session.add_key( " " + BIP39_ABANDON.upper() ).unwrap().key_id == first.key_id
    assert len( session.keys.key_ids() ) == 1

    second			= session.add_key( BIP39_ABANDON, passphrase="TREZOR", label="Trezor" ).unwrap()
    assert second.label == "Trezor"
    third			= session.generate_key( strength=256 ).unwrap()
    assert len( third.mnemonic.split() ) == 24
    assert third.label == "Key 2"
    with pytest.raises( ValueError ):
        session.add_key( "abandon " * 12 )

    assert session.delete_key( second.key_id ).ok
    assert [ k.key_id for k in session.keys.load_all() ] == [ first.key_id, third.key_id ]

    session.close()
    with pytest.raises( SessionInactive ):
        session.add_key( BIP39_ZOO )
    with pytest.raises( SessionInactive ):
        session.keys.load( first.key_id )


def test_vault_single_sig_wallets():
    vault			= new_vault()
    with vault.unlock( "main password" ).unwrap() as session:
        key			= session.add_key( BIP39_ABANDON ).unwrap()
        savings			= session.create_single_sig_wallet( key, "Savings" ).unwrap()
        assert savings.derivation_path == "m/84'/0'/0'"
        assert savings.master_fingerprint == "73c5da0a"
        assert savings.key_ids == [ key.key_id ]
        legacy			= session.create_single_sig_wallet( key, "Legacy", script_type=ScriptType.P2PKH ).unwrap()
        testnet			= session.create_single_sig_wallet( key, "Test", script_type="P2TR", testnet=True ).unwrap()
        assert testnet.derivation_path == "m/86'/1'/0'"
        assert [ w.id for w in session.wallets() ] == [ savings.id, legacy.id, testnet.id ]

        keys			= session.wallet_keys( savings.id ).unwrap()
        assert keys.xpub == BIP84_ZPUB
        assert next( generate_addresses( keys, count=1 ))[1] == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert session.wallet_keys( legacy.id ).value.address() == "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"
        assert session.wallet_keys( testnet.id ).value.address().startswith( "tb1p" )
        assert isinstance( session.wallet_keys( "nonesuch" ).error, WalletNotFound )

        # A key used by a single-signature wallet cannot be deleted, even with detach
        res			= session.delete_key( key.key_id, detach=True )
        assert isinstance( res.error, ReferentialViolation )
        assert sorted( res.error.wallet_ids ) == sorted( [ savings.id, legacy.id, testnet.id ] )
        assert sorted( session.wallets_referencing_key( key.key_id )) == sorted( res.error.wallet_ids )

        session.set_order( [ testnet.id, savings.id ] )
        assert [ w.id for w in session.wallets() ] == [ testnet.id, savings.id, legacy.id ]
        for w in ( savings, legacy, testnet ):
            assert session.delete_wallet( w.id ).ok
        assert session.wallets() == []
        assert session.delete_key( key.key_id ).ok


def test_vault_passphrase_wallet():
    vault			= new_vault()
    with vault.unlock( "main password" ).unwrap() as session:
        key			= session.add_key( BIP39_ABANDON ).unwrap()
        wallet			= session.create_single_sig_wallet( key, "Hidden", has_passphrase=True, passphrase="TREZOR" ).unwrap()
        assert wallet.has_passphrase
        assert wallet.master_fingerprint == wallet_key( BIP39_ABANDON, passphrase="TREZOR" ).fingerprint
        assert isinstance( session.wallet_keys( wallet.id ).error, AuthenticationFailed )
        keys			= session.wallet_keys( wallet.id, passphrase="TREZOR" ).unwrap()
        assert keys.fingerprint == wallet.master_fingerprint
        assert keys.xpub != BIP84_ZPUB


def test_vault_accounts():
    vault			= new_vault()
    with vault.unlock( "main password" ).unwrap() as session:
        key			= session.add_key( BIP39_ABANDON ).unwrap()
        wallet			= session.create_single_sig_wallet( key, "Savings" ).unwrap()
        updated			= session.add_account( wallet.id, name="Spending" ).unwrap()
        assert updated.accounts == [ 0, 1 ]
        assert updated.active_account_number == 1
        assert updated.active_derivation_path == "m/84'/0'/1'"
        assert updated.account_display_name() == "Spending"
        assert updated.account_display_name( 0 ) == "Account 0"
        assert session.wallet_keys( wallet.id ).value.path == "m/84'/0'/1'"

        assert session.set_active_account( wallet.id, 0 ).value.active_account_number == 0
        assert isinstance( session.set_active_account( wallet.id, 7 ).error, VaultError )
        assert session.rename_account( wallet.id, 1, "Bills" ).value.account_names == { 1: "Bills" }
        assert session.rename_account( wallet.id, 1, "" ).value.account_names == {}
        assert isinstance( session.add_account( "nonesuch" ).error, WalletNotFound )
        assert session.wallet( wallet.id ).accounts == [ 0, 1 ]


def test_vault_multisig_wallets():
    vault			= new_vault()
    with vault.unlock( "main password" ).unwrap() as session:
        text			= multisig_text( [ BIP39_ABANDON, BIP39_ZOO, BIP39_LEGAL ] )
        # No local cosigner
        assert isinstance( session.create_multisig_wallet( "Shared", text ).error, DescriptorParseError )

        abandon			= session.add_key( BIP39_ABANDON ).unwrap()
        multi			= session.create_multisig_wallet( "Shared", text ).unwrap()
        assert multi.is_multisig
        assert multi.key_ids == [ abandon.key_id ]
        assert multi.derivation_path == "m/48'/1'/0'/2'"
        assert multi.master_fingerprint == abandon.fingerprint
        assert multi.multisig_config.raw_descriptor == text
        assert [ m.id for m in session.multisig_wallets_using_fingerprint( abandon.fingerprint.upper() ) ] == [ multi.id ]

        # Importing another cosigner's key binds it to the existing multisig wallet
        zoo			= session.add_key( BIP39_ZOO ).unwrap()
        assert session.wallet( multi.id ).key_ids == [ abandon.key_id, zoo.key_id ]

        # The BSMS export re-imports, and carries the first address
        bsms			= session.export_bsms( multi.id ).unwrap()
        assert bsms.splitlines()[0] == BSMS_VERSION
        first			= multisig_address( session.wallet( multi.id ).multisig_config )
        assert extract_descriptor( bsms ).first_address == first
        again			= session.create_multisig_wallet( "Shared again", bsms ).unwrap()
        assert again.key_ids == [ abandon.key_id, zoo.key_id ]
        assert isinstance( session.export_bsms( "nonesuch" ).error, WalletNotFound )

        # A key used only by multisig wallets may be detached and deleted
        assert isinstance( session.delete_key( zoo.key_id ).error, ReferentialViolation )
        assert session.delete_key( zoo.key_id, detach=True ).ok
        assert session.wallet( multi.id ).key_ids == [ abandon.key_id ]
        assert session.wallet( again.id ).key_ids == [ abandon.key_id ]
        assert session.wallet( multi.id ).multisig_config.n == 3


def test_vault_multisig_first_address():
    vault			= new_vault()
    with vault.unlock( "main password" ).unwrap() as session:
        session.add_key( BIP39_ABANDON ).unwrap()
        other			= parse_descriptor( multisig_text( [ BIP39_ABANDON, BIP39_LEGAL ] ), [ "73c5da0a" ] ).value
        mnemonics		= [ BIP39_ABANDON, BIP39_ZOO ]
        config			= parse_descriptor( multisig_text( mnemonics ), [ "73c5da0a" ] ).value

        good			= multisig_text( mnemonics, bsms=True, first_address=multisig_address( config ))
        assert session.create_multisig_wallet( "Good", good ).ok
        bad			= multisig_text( mnemonics, bsms=True, first_address=multisig_address( other ))
        res			= session.create_multisig_wallet( "Bad", bad )
        assert isinstance( res.error, DescriptorParseError )
        assert "first address" in str( res.error )
        assert [ w.name for w in session.wallets() ] == [ "Good" ]


def test_vault_change_password():
    vault			= new_vault( decoy="decoy password" )
    session			= vault.unlock( "main password" ).unwrap()
    key				= session.add_key( BIP39_ABANDON ).unwrap()
    session.create_single_sig_wallet( key, "Savings" ).unwrap()
    before			= session.store.get( PREFIX_WALLET_KEY + key.key_id )

    assert isinstance( vault.change_password( session, "wrong", "new password" ).error, AuthenticationFailed )
    assert isinstance( vault.change_password( session, "main password", "" ).error, PasswordPolicyError )
    assert isinstance( vault.change_password( session, "main password", "decoy password" ).error, PasswordPolicyError )

    assert vault.change_password( session, "main password", "new password" ).ok
    assert session.is_active
    assert session.store.get( PREFIX_WALLET_KEY + key.key_id ) != before
    # The live session was re-keyed, and still reads every key
    assert session.keys.load( key.key_id ) == key
    session.close()

    assert isinstance( vault.unlock( "main password" ).error, AuthenticationFailed )
    with vault.unlock( "new password" ).unwrap() as again:
        assert again.keys.load( key.key_id ) == key
        assert again.wallet_keys( again.wallets()[0].id ).value.xpub == BIP84_ZPUB


def test_vault_change_password_atomic():
    vault			= new_vault()
    session			= vault.unlock( "main password" ).unwrap()
    keys			= [ session.add_key( m ).unwrap() for m in ( BIP39_ABANDON, BIP39_ZOO, BIP39_LEGAL ) ]
    snapshot			= session.store.snapshot()

    session.store.fail_commits	= 1
    res				= vault.change_password( session, "main password", "new password" )
    assert isinstance( res.error, StorageWriteFailed )
    # Nothing was written, and the old password and session key remain in force
    assert session.store.snapshot() == snapshot
    assert [ session.keys.load( k.key_id ) for k in keys ] == keys
    session.close()
    assert isinstance( vault.unlock( "new password" ).error, AuthenticationFailed )
    with vault.unlock( "main password" ).unwrap() as again:
        assert [ again.keys.load( k.key_id ) for k in keys ] == keys


def test_vault_change_password_refuses_undecryptable():
    vault			= new_vault()
    session			= vault.unlock( "main password" ).unwrap()
    key				= session.add_key( BIP39_ABANDON ).unwrap()
    session.store.put( PREFIX_WALLET_KEY + key.key_id, "AAAA" + session.store.get( PREFIX_WALLET_KEY + key.key_id )[4:] )
    res				= vault.change_password( session, "main password", "new password" )
    assert not res.ok
    assert "cannot be decrypted" in str( res.error )
    assert vault.unlock( "main password" ).ok


def test_vault_migrates_on_unlock():
    vault			= new_vault()
    store			= vault.stores[MAIN]
    record			= vault.record()
    legacy			= SessionKeyManager( iterations=record.iterations )
    legacy.initialize_session( "main password", record.salt, record.iterations )
    metadata			= MetadataRepository( store )
    metadata.save( WalletMetadata( id="old", name="Old", master_fingerprint="73c5da0a" ))
    store.put( PREFIX_WALLET_SECRETS + "old", legacy.encrypt( json.dumps( dict( mnemonic=BIP39_ABANDON, passphrase="" ))))
    legacy.clear_session()

    with vault.unlock( "main password" ).unwrap() as session:
        assert store.get( KEY_MIGRATION_VERSION ) == "2"
        assert not store.contains( PREFIX_WALLET_SECRETS + "old" )
        wallet			= session.wallet( "old" )
        assert session.wallet_key( "old" ).fingerprint == "73c5da0a"
        assert session.wallet_keys( wallet.id ).value.xpub == BIP84_ZPUB

    # Without automatic migration, the session may migrate explicitly
    vault			= new_vault()
    with vault.unlock( "main password", migrate=False ).unwrap() as session:
        assert session.migration.needs_migration()
        report			= session.migrate()
        assert report.complete and report.to_version == 2


def test_vault_wipe():
    vault			= new_vault( decoy="decoy password" )
    session			= vault.unlock( "main password" ).unwrap()
    session.add_key( BIP39_ABANDON ).unwrap()
    vault.unlock( "wrong" )
    vault.wipe()
    assert not session.is_active
    assert vault.sessions == []
    assert not vault.has_password( MAIN ) and not vault.has_password( DECOY )
    assert vault.stores[MAIN].keys() == frozenset()
    assert vault.attempts.failed_attempts == 0
    assert vault.set_password( "fresh" ).ok


@pytest.mark.parametrize( "read", [
    lambda s, k, w: s.wallets(),
    lambda s, k, w: s.wallet( w.id ),
    lambda s, k, w: s.wallet_key( w.id ),
    lambda s, k, w: s.wallet_keys( w.id ),
    lambda s, k, w: s.wallets_referencing_key( k.key_id ),
    lambda s, k, w: s.multisig_wallets_using_fingerprint( k.fingerprint ),
    lambda s, k, w: s.export_bsms( w.id ),
    lambda s, k, w: s.set_order( [ w.id ] ),
    lambda s, k, w: s.add_account( w.id ),
    lambda s, k, w: s.keys.key_ids(),
    lambda s, k, w: s.keys.load( k.key_id ),
    lambda s, k, w: s.keys.load_all(),
    lambda s, k, w: s.keys.delete( k.key_id ),
] )
@pytest.mark.parametrize( "end", [ "close", "wipe" ] )
def test_vault_session_reads_after_end( end, read ):
    vault			= new_vault()
    session			= vault.unlock( "main password" ).unwrap()
    key				= session.add_key( BIP39_ABANDON ).unwrap()
    wallet			= session.create_single_sig_wallet( key, "Savings" ).unwrap()
    if end == "close":
        session.close()
    else:
        vault.wipe()
    with pytest.raises( SessionInactive ):
        read( session, key, wallet )


def test_vault_change_password_keeps_iterations():
    store			= MemoryStore()
    strong			= Vault( store, iterations=ITERATIONS * 5 )
    assert strong.set_password( "main password" ).ok

    weak			= Vault( store, iterations=1 )
    with weak.unlock( "main password" ).unwrap() as session:
        key			= session.add_key( BIP39_ABANDON ).unwrap()
        assert weak.change_password( session, "main password", "new password" ).ok
        assert session.keys.load( key.key_id ) == key
    assert weak.record().iterations == ITERATIONS * 5
    with strong.unlock( "new password" ).unwrap() as session:
        assert session.keys.load( key.key_id ) == key


def test_vault_unlock_survives_migration_write_failure():
    vault			= new_vault()
    store			= vault.stores[MAIN]
    record			= vault.record()
    legacy			= SessionKeyManager( iterations=record.iterations )
    legacy.initialize_session( "main password", record.salt, record.iterations )
    MetadataRepository( store ).save( WalletMetadata( id="old", name="Old", master_fingerprint="73c5da0a" ))
    store.put( PREFIX_WALLET_SECRETS + "old", legacy.encrypt( json.dumps( dict( mnemonic=BIP39_ABANDON, passphrase="" ))))
    legacy.clear_session()

    store.fail_keys		= { KEY_MIGRATION_VERSION }
    with vault.unlock( "main password" ).unwrap() as session:
        assert session.wallet_key( "old" ).fingerprint == "73c5da0a"
        assert store.get( KEY_MIGRATION_VERSION ) is None

    store.fail_keys		= set()
    with vault.unlock( "main password" ).unwrap() as session:
        assert store.get( KEY_MIGRATION_VERSION ) == "2"
        assert len( session.keys.key_ids() ) == 1


def test_vault_unlock_survives_migration_error( monkeypatch ):
    vault			= new_vault()

    def failing( self ):
        raise OSError( "disk full" )
    monkeypatch.setattr( MigrationEngine, "run_if_needed", failing )
    res				= vault.unlock( "main password" )
    assert res.ok and res.value.is_active
