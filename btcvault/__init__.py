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

from .version		import __version__				# noqa F401
from .errors		import (					# noqa F401
    VaultError, AuthenticationFailed, LockedOut, SessionInactive, StorageCorrupt, StorageWriteFailed,
    ReferentialViolation, DescriptorParseError, MigrationAborted, WalletNotFound, PasswordPolicyError,
    Result,
)
from .types		import (					# noqa F401
    ScriptType, MultisigScriptType, WalletKey, CosignerInfo, MultisigConfig, WalletMetadata,
)
from .store		import KeyValueStore, MemoryStore, FileStore, SoftwareKeyWrapper	# noqa F401
from .password		import PasswordHasher, PasswordRecord		# noqa F401
from .session		import SessionKeyManager				# noqa F401
from .lockout		import LoginAttemptManager				# noqa F401
from .repository	import KeyRepository, MetadataRepository		# noqa F401
from .migration		import MigrationEngine, MigrationReport		# noqa F401
from .api		import Account, AccountKeys, wallet_key, derive_wallet_keys, generate_addresses	# noqa F401
from .descriptor	import parse_descriptor, multisig_descriptor, create_descriptor_record	# noqa F401
from .binder		import rebind							# noqa F401
from .vault		import Vault, VaultSession, MAIN, DECOY			# noqa F401

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"
