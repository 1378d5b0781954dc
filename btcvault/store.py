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
import os
import secrets
import tempfile
import threading

from abc		import ABC, abstractmethod
from typing		import Dict, FrozenSet, Iterable, Mapping, Optional, Union

from Crypto.Cipher	import AES

from .defaults		import KEY_BYTES, GCM_NONCE_BYTES, GCM_TAG_BYTES
from .errors		import StorageCorrupt

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

"""
Key/value persistence collaborators.

A KeyValueStore is an opaque map of str --> str (or frozenset of str, for index sets), whose
confidentiality and integrity at rest is its own business.  The only multi-key guarantee is
put_all: every entry (and removal) is committed, or none is.
"""

log				= logging.getLogger( __package__ )

Value				= Union[str, FrozenSet[str]]


class KeyValueStore( ABC ):

    @abstractmethod
    def get( self, key: str ) -> Optional[str]:
        """The str value of key, or None if absent."""

    @abstractmethod
    def get_set( self, key: str ) -> FrozenSet[str]:
        """A snapshot of the set value of key; empty if absent."""

    @abstractmethod
    def put_all( self, mapping: Mapping[str, Value], removals: Iterable[str] = () ) -> None:
        """Atomically store every entry of mapping (sets for set values), and remove every key in
        removals.  Raises OSError (and changes nothing) if the commit fails.

        """

    @abstractmethod
    def keys( self ) -> FrozenSet[str]:
        """All keys currently stored."""

    def contains( self, key: str ) -> bool:
        return key in self.keys()

    def put( self, key: str, value: str ) -> None:
        self.put_all( { key: value } )

    def put_set( self, key: str, values: Iterable[str] ) -> None:
        self.put_all( { key: frozenset( values ) } )

    def remove( self, key: str ) -> None:
        self.put_all( {}, removals=( key, ))

    def clear( self ) -> None:
        self.put_all( {}, removals=self.keys() )


def _normalize( mapping: Mapping[str, Value] ) -> Dict[str, Value]:
    normal			= {}
    for key,value in mapping.items():
        if isinstance( value, str ):
            normal[key]		= value
        elif isinstance( value, ( set, frozenset, list, tuple )):
            normal[key]		= frozenset( value )
        else:
            raise TypeError( f"Store values must be str or a set of str, not {type( value ).__name__} for {key!r}" )
    return normal


class MemoryStore( KeyValueStore ):
    """An in-process KeyValueStore.  Each commit replaces the whole snapshot, so readers never see
    a partially applied put_all.

    For testing atomicity, a commit may be made to fail: set fail_commits to the number of
    upcoming put_all calls that should fail, or fail_keys to a set of key prefixes whose writes
    should fail.

    """
    def __init__( self, data: Optional[Mapping[str, Value]] = None ):
        self._lock		= threading.Lock()
        self._data		= _normalize( data or {} )
        self.fail_commits	= 0
        self.fail_keys		= set()
        self.commits		= 0

    def get( self, key ):
        value			= self._data.get( key )
        return value if isinstance( value, str ) else None

    def get_set( self, key ):
        value			= self._data.get( key )
        return value if isinstance( value, frozenset ) else frozenset()

    def keys( self ):
        return frozenset( self._data )

    def snapshot( self ) -> Dict[str, Value]:
        return dict( self._data )

    def put_all( self, mapping, removals=() ):
        normal			= _normalize( mapping )
        removals		= list( removals )
        with self._lock:
            if self.fail_commits > 0:
                self.fail_commits	-= 1
                raise OSError( "Simulated store commit failure" )
            touched		= list( normal ) + removals
            if any( k.startswith( p ) for k in touched for p in self.fail_keys ):
                raise OSError( f"Simulated store write failure for {', '.join( touched )}" )
            data		= dict( self._data )
            data.update( normal )
            for key in removals:
                data.pop( key, None )
            self._data		= data
            self.commits       += 1


class KeyWrapper( ABC ):
    """Capability to seal data under a key that is never exposed outside the wrapper (eg. held in
    a hardware secure element).

    """
    @abstractmethod
    def wrap( self, data: bytes ) -> bytes:
        pass

    @abstractmethod
    def unwrap( self, blob: bytes ) -> bytes:
        """Raises StorageCorrupt if the blob was not produced by this wrapper, or was altered."""


class SoftwareKeyWrapper( KeyWrapper ):
    """A KeyWrapper whose AES-256-GCM device key is held in a private (0600) file, for platforms
    without a secure element.  The key file is created on first use.

    """
    def __init__( self, key_path: str ):
        self.key_path		= key_path
        if not os.path.exists( key_path ):
            fd			= os.open( key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600 )
            with os.fdopen( fd, 'wb' ) as f:
                f.write( secrets.token_bytes( KEY_BYTES ))
            log.info( f"Created device key {key_path}" )

    def _key( self ) -> bytes:
        with open( self.key_path, 'rb' ) as f:
            key			= f.read()
        if len( key ) != KEY_BYTES:
            raise StorageCorrupt( f"Device key {self.key_path} is {len( key )} bytes; expected {KEY_BYTES}" )
        return key

    def wrap( self, data ):
        nonce			= secrets.token_bytes( GCM_NONCE_BYTES )
        cipher			= AES.new( self._key(), AES.MODE_GCM, nonce=nonce, mac_len=GCM_TAG_BYTES )
        ciphertext, tag		= cipher.encrypt_and_digest( data )
        return nonce + ciphertext + tag

    def unwrap( self, blob ):
        if len( blob ) < GCM_NONCE_BYTES + GCM_TAG_BYTES:
            raise StorageCorrupt( "Sealed store is truncated" )
        nonce, ciphertext, tag	= blob[:GCM_NONCE_BYTES], blob[GCM_NONCE_BYTES:-GCM_TAG_BYTES], blob[-GCM_TAG_BYTES:]
        cipher			= AES.new( self._key(), AES.MODE_GCM, nonce=nonce, mac_len=GCM_TAG_BYTES )
        try:
            return cipher.decrypt_and_verify( ciphertext, tag )
        except ValueError as exc:
            raise StorageCorrupt( f"Sealed store failed authentication: {exc}" ) from exc


class FileStore( MemoryStore ):
    """A KeyValueStore persisted as one JSON document, optionally sealed by a KeyWrapper.  Every
    commit writes a temporary file beside the target, flushes it to disk, and renames it over the
    target, so a crash leaves either the old or the new document.

    """
    def __init__( self, path: str, wrapper: Optional[KeyWrapper] = None ):
        self.path		= path
        self.wrapper		= wrapper
        super().__init__( self._load() )

    def _load( self ) -> Dict[str, Value]:
        if not os.path.exists( self.path ):
            return {}
        with open( self.path, 'rb' ) as f:
            raw			= f.read()
        if self.wrapper:
            raw			= self.wrapper.unwrap( raw )
        try:
            doc			= json.loads( raw.decode( 'utf-8' ))
        except ValueError as exc:
            raise StorageCorrupt( f"Store {self.path} is not valid JSON: {exc}" ) from exc
        data			= dict( doc.get( 'values', {} ))
        data.update( { k: frozenset( v ) for k,v in doc.get( 'sets', {} ).items() } )
        log.debug( f"Loaded {len( data )} entries from {self.path}" )
        return data

    def _save( self, data: Dict[str, Value] ) -> None:
        doc			= dict(
            values	= { k: v for k,v in sorted( data.items() ) if isinstance( v, str ) },
            sets	= { k: sorted( v ) for k,v in sorted( data.items() ) if isinstance( v, frozenset ) },
        )
        raw			= json.dumps( doc, indent=4 ).encode( 'utf-8' )
        if self.wrapper:
            raw			= self.wrapper.wrap( raw )
        directory		= os.path.dirname( os.path.abspath( self.path ))
        fd, tmp			= tempfile.mkstemp( dir=directory, prefix='.btcvault-', suffix='.tmp' )
        try:
            with os.fdopen( fd, 'wb' ) as f:
                f.write( raw )
                f.flush()
                os.fsync( f.fileno() )
            os.replace( tmp, self.path )
        except BaseException:
            if os.path.exists( tmp ):
                os.unlink( tmp )
            raise

    def put_all( self, mapping, removals=() ):
        normal			= _normalize( mapping )
        removals		= list( removals )
        with self._lock:
            data		= dict( self._data )
            data.update( normal )
            for key in removals:
                data.pop( key, None )
            self._save( data )
            self._data		= data
            self.commits       += 1
