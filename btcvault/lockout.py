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
import threading
import time

from typing		import Callable, Sequence

from .defaults		import (
    LOCKOUT_DELAYS, LOCKOUT_MAX_ATTEMPTS, LOCKOUT_MAX_DELAY,
    KEY_FAILED_ATTEMPTS, KEY_LOCKOUT_UNTIL, KEY_LAST_ATTEMPT,
)
from .store		import KeyValueStore

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

log				= logging.getLogger( __package__ )


def format_remaining_time( remaining: int ) -> str:
    """Render a remaining lockout (in milliseconds) for display, rounding up."""
    seconds			= max( 0, ( remaining + 999 ) // 1000 )
    if seconds < 60:
        return f"{seconds} second{'' if seconds == 1 else 's'}"
    minutes			= ( seconds + 59 ) // 60
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'}"
    hours			= ( minutes + 59 ) // 60
    return f"{hours} hour{'' if hours == 1 else 's'}"


class LoginAttemptManager:
    """Failed-login counter with a growing lockout window, persisted in a KeyValueStore so that it
    survives restarts.  All times are wall-clock milliseconds.

    A newly computed lockout never shortens one already in force, even if the clock has moved
    backwards since it was recorded.

    """
    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float]	= time.time,
        delays: Sequence[int]		= LOCKOUT_DELAYS,
        max_attempts: int		= LOCKOUT_MAX_ATTEMPTS,
        max_delay: int			= LOCKOUT_MAX_DELAY,
    ):
        self.store		= store
        self.clock		= clock
        self.delays		= tuple( delays )
        self.max_attempts	= max_attempts
        self.max_delay		= max_delay
        self._lock		= threading.Lock()

    def now( self ) -> int:
        return int( self.clock() * 1000 )

    def _int( self, key: str ) -> int:
        try:
            return int( self.store.get( key ) or 0 )
        except ValueError:
            log.warning( f"Ignoring corrupt login attempt state {key}" )
            return 0

    @property
    def failed_attempts( self ) -> int:
        return self._int( KEY_FAILED_ATTEMPTS )

    @property
    def lockout_until( self ) -> int:
        return self._int( KEY_LOCKOUT_UNTIL )

    @property
    def last_attempt( self ) -> int:
        return self._int( KEY_LAST_ATTEMPT )

    def delay_for( self, attempts: int ) -> int:
        """Lockout (ms) imposed after the given number of consecutive failures."""
        if attempts <= 0:
            return 0
        if attempts >= self.max_attempts:
            return self.max_delay
        return self.delays[min( attempts - 1, len( self.delays ) - 1 )]

    def remaining_lockout_time( self ) -> int:
        return max( 0, self.lockout_until - self.now() )

    def is_locked_out( self ) -> bool:
        return self.remaining_lockout_time() > 0

    def record_failed_attempt( self ) -> int:
        """Count a failure; returns the (possibly extended) lockout_until."""
        with self._lock:
            now			= self.now()
            attempts		= self.failed_attempts + 1
            delay		= self.delay_for( attempts )
            until		= max( self.lockout_until, now + delay if delay else 0 )
            self.store.put_all( {
                KEY_FAILED_ATTEMPTS:	str( attempts ),
                KEY_LOCKOUT_UNTIL:	str( until ),
                KEY_LAST_ATTEMPT:	str( now ),
            } )
        if delay:
            log.warning( f"Failed login attempt {attempts}; locked out for {format_remaining_time( until - now )}" )
        else:
            log.info( f"Failed login attempt {attempts}" )
        return until

    def reset_attempts( self ) -> None:
        """Only after a verified successful login."""
        with self._lock:
            self.store.put_all( {}, removals=( KEY_FAILED_ATTEMPTS, KEY_LOCKOUT_UNTIL, KEY_LAST_ATTEMPT ))
