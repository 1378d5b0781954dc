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

import click
import json
import logging
import os

from ..			import api
from ..bip39		import produce_bip39
from ..defaults		import ADDRESS_COUNT, BITS, PBKDF2_ITERATIONS
from ..descriptor	import multisig_addresses
from ..errors		import LockedOut
from ..lockout		import format_remaining_time
from ..store		import FileStore, SoftwareKeyWrapper
from ..types		import ScriptType
from ..util		import commas, log_cfg, log_level, input_secure
from ..vault		import DECOY, MAIN, Vault

try:
    import tabulate
except ImportError:
    tabulate			= None

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
Provide basic CLI access to a btcvault store directory.

Output generally defaults to JSON.  Use -v for more details, and --no-json to emit tables instead
(requires the tabulate module; pip install btcvault[cli]).
"""

log				= logging.getLogger( __package__ )


@click.group()
@click.option('-v', '--verbose', count=True)
@click.option('-q', '--quiet', count=True)
@click.option( '--json/--no-json', default=True, help="Output JSON (the default)")
@click.option( '--store', default=os.path.join( "~", ".btcvault" ), envvar="BTCVAULT_STORE", help="The vault directory (default: ~/.btcvault)" )
@click.option( '--iterations', type=int, default=PBKDF2_ITERATIONS, envvar="BTCVAULT_ITERATIONS", help="PBKDF2 iterations for newly set passwords" )
@click.option( '--testnet/--mainnet', default=False, help="Create testnet wallets" )
def cli( verbose, quiet, json, store, iterations, testnet ):
    cli.verbosity		= verbose - quiet
    log_cfg['level']		= log_level( cli.verbosity )
    logging.basicConfig( **log_cfg )
    if verbose or quiet:
        logging.getLogger().setLevel( log_cfg['level'] )
    cli.json			= json
    cli.store			= os.path.expanduser( store )
    cli.iterations		= iterations
    cli.testnet			= testnet
cli.verbosity			= 0  # noqa: E305
cli.json			= False
cli.store			= None
cli.iterations			= PBKDF2_ITERATIONS
cli.testnet			= False


def open_vault() -> Vault:
    """The Vault over the store directory's main, decoy and login attempt files, each sealed by the
    directory's device key.

    """
    os.makedirs( cli.store, mode=0o700, exist_ok=True )
    wrapper			= SoftwareKeyWrapper( os.path.join( cli.store, "device.key" ))
    return Vault(
        main_store	= FileStore( os.path.join( cli.store, "main.json" ), wrapper=wrapper ),
        decoy_store	= FileStore( os.path.join( cli.store, "decoy.json" ), wrapper=wrapper ),
        attempts_store	= FileStore( os.path.join( cli.store, "attempts.json" ), wrapper=wrapper ),
        iterations	= cli.iterations,
    )


def unlock( vault: Vault, migrate: bool = True ):
    res				= vault.unlock( input_secure( 'Password: ', secret=True ).strip(), migrate=migrate )
    if not res.ok:
        if isinstance( res.error, LockedOut ):
            raise click.ClickException( f"Too many failed attempts; try again in {format_remaining_time( res.error.remaining )}" )
        raise click.ClickException( str( res.error ))
    return res.value


def checked( res ):
    if not res.ok:
        raise click.ClickException( str( res.error ))
    return res.value


def output( rows, headers ):
    """Emit a list of row tuples as JSON objects, or as a table."""
    if cli.json:
        click.echo( json.dumps( [ dict( zip( headers, row )) for row in rows ], indent=4 ))
        return
    if tabulate is None:
        raise click.ClickException( "The tabulate module is required for --no-json output; pip install btcvault[cli]" )
    click.echo( tabulate.tabulate( rows, headers=headers, tablefmt='orgtbl' ))


@click.command()
@click.option( '--decoy', is_flag=True, default=False, help="Set the decoy password (after the main password)" )
def init( decoy ):
    """Set the main (or decoy) password of a new vault."""
    vault			= open_vault()
    password			= input_secure( 'New password: ', secret=True ).strip()
    confirm			= input_secure( 'Confirm password: ', secret=True ).strip()
    if password != confirm:
        raise click.ClickException( "Passwords do not match" )
    identity			= checked( vault.set_password( password, DECOY if decoy else MAIN ))
    click.echo( f"The {identity} password is set" )


@click.command()
@click.option( '--strength', type=int, default=None, help=f"Entropy bits; one of {commas( BITS, final='or' )}" )
def generate( strength ):
    """Print a new random BIP-39 mnemonic (nothing is stored)."""
    try:
        click.echo( produce_bip39( strength=strength ))
    except ValueError as exc:
        raise click.ClickException( str( exc ))


@click.command( name='add-key' )
@click.option( '--label', default=None, help="The key's label (default: the next free 'Key N')" )
@click.option( '--passphrase/--no-passphrase', default=False, help="Prompt for a BIP-39 passphrase to apply to the seed" )
def add_key( label, passphrase ):
    """Import a BIP-39 mnemonic (read from input) as a key."""
    vault			= open_vault()
    with unlock( vault ) as session:
        mnemonic		= input_secure( 'BIP-39 mnemonic: ', secret=True ).strip()
        phrase			= input_secure( 'BIP-39 passphrase: ', secret=True ).strip() if passphrase else None
        try:
            key			= checked( session.add_key( mnemonic, passphrase=phrase, label=label ))
        except ValueError as exc:
            raise click.ClickException( str( exc ))
        output( [ ( key.key_id, key.label, key.fingerprint ) ], ( 'keyId', 'label', 'fingerprint' ))


@click.command()
def keys():
    """List the vault's keys."""
    vault			= open_vault()
    with unlock( vault ) as session:
        rows			= [
            ( key.key_id, key.label, key.fingerprint, len( session.wallets_referencing_key( key.key_id )))
            for key in session.keys.load_all()
        ]
        output( rows, ( 'keyId', 'label', 'fingerprint', 'wallets' ))


@click.command( name='delete-key' )
@click.argument( 'key_id' )
@click.option( '--detach/--no-detach', default=False, help="Detach the key from multisig wallets first" )
def delete_key( key_id, detach ):
    """Delete a key no wallet depends on."""
    vault			= open_vault()
    with unlock( vault ) as session:
        checked( session.delete_key( key_id, detach=detach ))
        click.echo( f"Deleted key {key_id}" )


@click.command( name='add-wallet' )
@click.argument( 'key_id' )
@click.argument( 'name' )
@click.option( '--script-type', default=ScriptType.P2WPKH.value, help=f"One of {commas( s.value for s in ScriptType )}" )
@click.option( '--account', type=int, default=0, help="The account number" )
@click.option( '--passphrase/--no-passphrase', default=False, help="The key is passphrase-less; a passphrase is required to open this wallet" )
def add_wallet( key_id, name, script_type, account, passphrase ):
    """Create a single-signature wallet over a key."""
    vault			= open_vault()
    with unlock( vault ) as session:
        key			= session.keys.load( key_id )
        if key is None:
            raise click.ClickException( f"No key {key_id}" )
        try:
            script_type		= ScriptType( script_type.upper() )
        except ValueError:
            raise click.ClickException( f"Unknown script type {script_type}; specify one of {commas( s.value for s in ScriptType )}" )
        metadata		= checked( session.create_single_sig_wallet(
            key,
            name,
            script_type		= script_type,
            account		= account,
            testnet		= cli.testnet,
            has_passphrase	= passphrase,
        ))
        output( [ ( metadata.id, metadata.name, metadata.active_derivation_path ) ], ( 'id', 'name', 'path' ))


@click.command( name='import-multisig' )
@click.argument( 'name' )
@click.argument( 'descriptor', type=click.File( 'r' ))
def import_multisig( name, descriptor ):
    """Import a multisig wallet from a descriptor or BSMS file ('-' for stdin)."""
    text			= descriptor.read()
    vault			= open_vault()
    with unlock( vault ) as session:
        metadata		= checked( session.create_multisig_wallet( name, text ))
        config			= metadata.multisig_config
        output(
            [ ( metadata.id, metadata.name, f"{config.m}-of-{config.n}", config.script_type.value, len( config.local_cosigners )) ],
            ( 'id', 'name', 'quorum', 'scriptType', 'local' ),
        )


@click.command()
def wallets():
    """List the vault's wallets, in display order."""
    vault			= open_vault()
    with unlock( vault ) as session:
        rows			= []
        for metadata in session.wallets():
            kind		= "multisig" if metadata.is_multisig else "single"
            if metadata.is_multisig and metadata.multisig_config:
                kind		= f"{metadata.multisig_config.m}-of-{metadata.multisig_config.n}"
            rows.append( ( metadata.id, metadata.name, kind, metadata.active_derivation_path, metadata.account_display_name() ))
        output( rows, ( 'id', 'name', 'kind', 'path', 'account' ))


@click.command()
@click.argument( 'wallet_id' )
@click.option( '--count', type=int, default=ADDRESS_COUNT, help="The number of addresses" )
@click.option( '--change', is_flag=True, default=False, help="The change chain, instead of receive" )
@click.option( '--passphrase/--no-passphrase', default=False, help="Prompt for the wallet's BIP-39 passphrase" )
def addresses( wallet_id, count, change, passphrase ):
    """Print a wallet's receive (or change) addresses."""
    vault			= open_vault()
    with unlock( vault ) as session:
        metadata		= session.wallet( wallet_id )
        if metadata is None:
            raise click.ClickException( f"No wallet {wallet_id}" )
        if metadata.is_multisig:
            rows		= list( multisig_addresses( metadata.multisig_config, count, change=int( change )))
        else:
            phrase		= input_secure( 'BIP-39 passphrase: ', secret=True ).strip() if passphrase else None
            account_keys	= checked( session.wallet_keys( wallet_id, passphrase=phrase ))
            rows		= list( api.generate_addresses( account_keys, count=count, change=int( change )))
        output( rows, ( 'path', 'address' ))


@click.command( name='export-bsms' )
@click.argument( 'wallet_id' )
def export_bsms( wallet_id ):
    """Print a multisig wallet's BSMS 1.0 descriptor record."""
    vault			= open_vault()
    with unlock( vault ) as session:
        click.echo( checked( session.export_bsms( wallet_id )))


@click.command( name='change-password' )
def change_password():
    """Change the password, re-encrypting every key."""
    vault			= open_vault()
    old				= input_secure( 'Password: ', secret=True ).strip()
    res				= vault.unlock( old )
    if not res.ok:
        raise click.ClickException( str( res.error ))
    with res.value as session:
        new			= input_secure( 'New password: ', secret=True ).strip()
        confirm			= input_secure( 'Confirm password: ', secret=True ).strip()
        if new != confirm:
            raise click.ClickException( "Passwords do not match" )
        checked( vault.change_password( session, old, new ))
        click.echo( "Password changed" )


@click.command()
def migrate():
    """Migrate legacy per-wallet secrets to shared keys (also done on every unlock)."""
    vault			= open_vault()
    with unlock( vault, migrate=False ) as session:
        report			= session.migrate()
        output(
            [ ( report.from_version, report.to_version, len( report.migrated ), report.keys_created, len( report.cleaned ), len( report.aborted )) ],
            ( 'from', 'to', 'migrated', 'keysCreated', 'cleaned', 'aborted' ),
        )
        for aborted in report.aborted:
            log.warning( str( aborted ))


@click.command()
@click.option( '--yes', is_flag=True, default=False, help="Do not ask for confirmation" )
def wipe( yes ):
    """Erase every key, wallet and password in the vault."""
    if not yes:
        click.confirm( f"Erase all data in {cli.store}?", abort=True )
    open_vault().wipe()
    click.echo( "Vault wiped" )


cli.add_command( init )
cli.add_command( generate )
cli.add_command( add_key )
cli.add_command( keys )
cli.add_command( delete_key )
cli.add_command( add_wallet )
cli.add_command( import_multisig )
cli.add_command( wallets )
cli.add_command( addresses )
cli.add_command( export_bsms )
cli.add_command( change_password )
cli.add_command( migrate )
cli.add_command( wipe )
