import json
import os

import pytest

from .errors		import StorageCorrupt
from .store		import FileStore, MemoryStore, SoftwareKeyWrapper


def test_memory_store():
    store			= MemoryStore( { "a": "1", "s": { "x", "y" } } )
    assert store.get( "a" ) == "1"
    assert store.get( "s" ) is None
    assert store.get_set( "s" ) == frozenset( { "x", "y" } )
    assert store.get_set( "a" ) == frozenset()
    assert store.contains( "a" ) and not store.contains( "b" )

    store.put_all( { "b": "2", "t": [ "z" ] }, removals=( "a", ))
    assert store.keys() == frozenset( { "b", "s", "t" } )
    assert store.get_set( "t" ) == frozenset( { "z" } )

    with pytest.raises( TypeError ):
        store.put_all( { "c": 3 } )
    assert not store.contains( "c" )

    store.clear()
    assert store.keys() == frozenset()


def test_memory_store_failures():
    store			= MemoryStore( { "a": "1" } )
    before			= store.snapshot()

    store.fail_commits		= 1
    with pytest.raises( OSError ):
        store.put_all( { "a": "2", "b": "3" } )
    assert store.snapshot() == before
    store.put( "a", "2" )
    assert store.get( "a" ) == "2"

    store.fail_keys		= { "wallet_key_" }
    with pytest.raises( OSError ):
        store.put_all( { "a": "3", "wallet_key_x": "secret" } )
    assert store.get( "a" ) == "2"
    assert not store.contains( "wallet_key_x" )
    with pytest.raises( OSError ):
        store.remove( "wallet_key_y" )


def test_file_store( tmp_path ):
    path			= str( tmp_path / "store.json" )
    store			= FileStore( path )
    assert store.keys() == frozenset()
    store.put_all( { "a": "1", "ids": { "x", "y" } } )

    with open( path ) as f:
        doc			= json.load( f )
    assert doc == { "values": { "a": "1" }, "sets": { "ids": [ "x", "y" ] } }

    again			= FileStore( path )
    assert again.get( "a" ) == "1"
    assert again.get_set( "ids" ) == frozenset( { "x", "y" } )
    # No temporary files are left behind
    assert os.listdir( str( tmp_path )) == [ "store.json" ]

    with open( path, 'w' ) as f:
        f.write( "{ not json" )
    with pytest.raises( StorageCorrupt ):
        FileStore( path )


def test_file_store_sealed( tmp_path ):
    key_path			= str( tmp_path / "device.key" )
    path			= str( tmp_path / "sealed.json" )
    wrapper			= SoftwareKeyWrapper( key_path )
    assert os.stat( key_path ).st_mode & 0o777 == 0o600

    store			= FileStore( path, wrapper=wrapper )
    store.put( "secret", "value" )
    with open( path, 'rb' ) as f:
        raw			= f.read()
    assert b"secret" not in raw

    assert FileStore( path, wrapper=SoftwareKeyWrapper( key_path )).get( "secret" ) == "value"

    # A different device key cannot open the store
    with pytest.raises( StorageCorrupt ):
        FileStore( path, wrapper=SoftwareKeyWrapper( str( tmp_path / "other.key" )))
