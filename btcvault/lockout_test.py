import pytest

from .defaults		import KEY_FAILED_ATTEMPTS, KEY_LOCKOUT_UNTIL
from .lockout		import LoginAttemptManager, format_remaining_time
from .store		import MemoryStore


class Clock:
    def __init__( self, now=1_700_000_000.0 ):
        self.now		= now

    def __call__( self ):
        return self.now

    def advance( self, seconds ):
        self.now	       += seconds


def test_lockout_schedule():
    clock			= Clock()
    attempts			= LoginAttemptManager( MemoryStore(), clock=clock )
    assert not attempts.is_locked_out()
    assert attempts.remaining_lockout_time() == 0

    attempts.record_failed_attempt()
    assert attempts.failed_attempts == 1
    assert not attempts.is_locked_out()

    attempts.record_failed_attempt()
    assert attempts.remaining_lockout_time() == 30 * 1000
    clock.advance( 10 )
    assert attempts.remaining_lockout_time() == 20 * 1000
    clock.advance( 20 )
    assert not attempts.is_locked_out()

    attempts.record_failed_attempt()
    assert attempts.remaining_lockout_time() == 60 * 1000
    attempts.record_failed_attempt()
    assert attempts.remaining_lockout_time() == 5 * 60 * 1000

    attempts.reset_attempts()
    assert attempts.failed_attempts == 0
    assert not attempts.is_locked_out()


@pytest.mark.parametrize( "failures, delay", [
    ( 0,	0 ),
    ( 1,	0 ),
    ( 2,	30 * 1000 ),
    ( 5,	15 * 60 * 1000 ),
    ( 6,	60 * 60 * 1000 ),
    ( 19,	60 * 60 * 1000 ),
    ( 20,	24 * 60 * 60 * 1000 ),
    ( 50,	24 * 60 * 60 * 1000 ),
] )
def test_lockout_delay_for( failures, delay ):
    assert LoginAttemptManager( MemoryStore() ).delay_for( failures ) == delay


def test_lockout_never_shortened():
    clock			= Clock()
    store			= MemoryStore()
    attempts			= LoginAttemptManager( store, clock=clock )
    for _ in range( 6 ):
        attempts.record_failed_attempt()
    until			= attempts.lockout_until
    assert attempts.remaining_lockout_time() == 60 * 60 * 1000

    # The clock moves backwards; a new failure cannot shorten the lockout already in force
    clock.advance( -3600 )
    attempts.record_failed_attempt()
    assert attempts.lockout_until >= until

    # A new manager over the same store sees the persisted state
    again			= LoginAttemptManager( store, clock=clock )
    assert again.failed_attempts == 7
    assert again.lockout_until == attempts.lockout_until


def test_lockout_corrupt_state():
    store			= MemoryStore( { KEY_FAILED_ATTEMPTS: "many", KEY_LOCKOUT_UNTIL: "soon" } )
    attempts			= LoginAttemptManager( store, clock=Clock() )
    assert attempts.failed_attempts == 0
    assert not attempts.is_locked_out()


@pytest.mark.parametrize( "remaining, text", [
    ( 0,		"0 seconds" ),
    ( 1,		"1 second" ),
    ( 30 * 1000,	"30 seconds" ),
    ( 60 * 1000,	"1 minute" ),
    ( 61 * 1000,	"2 minutes" ),
    ( 60 * 60 * 1000,	"1 hour" ),
    ( 24 * 60 * 60 * 1000, "24 hours" ),
] )
def test_format_remaining_time( remaining, text ):
    assert format_remaining_time( remaining ) == text
