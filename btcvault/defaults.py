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

__author__                      = "Perry Kundert"
__email__                       = "perry@dominionrnd.com"
__copyright__                   = "Copyright (c) 2022 Dominion Research & Development Corp."
__license__                     = "Dual License: GPLv3 (or later) and Commercial (see LICENSE)"

#
# Password hashing and session key derivation
#
#     password --PBKDF2-HMAC-SHA256--> 256-bit master --HKDF-SHA256--> 256-bit AES-GCM session key
#
# The iteration count is fixed when a password record is created, and carried in the record.
#
PBKDF2_ITERATIONS		= 210000
SALT_BYTES			= 32
KEY_BYTES			= 32
HKDF_INFO			= b"wallet-encryption"
GCM_NONCE_BYTES			= 12
GCM_TAG_BYTES			= 16

#
# Login attempt lockout schedule, in milliseconds, indexed by (failed attempts - 1).  Attempts
# beyond the end of the schedule use the last delay; LOCKOUT_MAX_ATTEMPTS or more imposes
# LOCKOUT_MAX_DELAY.
#
LOCKOUT_DELAYS			= (
    0,				# 1st failure
    30 * 1000,			# 2nd
    60 * 1000,			# 3rd
    5 * 60 * 1000,		# 4th
    15 * 60 * 1000,		# 5th
    60 * 60 * 1000,		# 6th and subsequent
)
LOCKOUT_MAX_ATTEMPTS		= 20
LOCKOUT_MAX_DELAY		= 24 * 60 * 60 * 1000

#
# Storage key names (within each identity's KeyValueStore)
#
KEY_PASSWORD_HASH		= "password_hash"
KEY_WALLET_IDS			= "wallet_ids"			# set
KEY_WALLET_ORDER		= "wallet_order"		# JSON array
KEY_WALLET_KEY_IDS		= "wallet_key_ids"		# set
KEY_MIGRATION_VERSION		= "migration_version"		# int, as a string
PREFIX_WALLET_META		= "wallet_meta_"		# + wallet id; plaintext JSON
PREFIX_WALLET_KEY		= "wallet_key_"			# + key id; AES-GCM ciphertext, base64
PREFIX_WALLET_SECRETS		= "wallet_secrets_"		# + wallet id; legacy ciphertext, base64

# Login attempt state (in its own KeyValueStore, shared by all identities)
KEY_FAILED_ATTEMPTS		= "failed_attempts"
KEY_LOCKOUT_UNTIL		= "lockout_until"
KEY_LAST_ATTEMPT		= "last_attempt"

#
# Schema versions
#
MIGRATION_VERSION_INITIAL	= 1		# Legacy: one encrypted secrets blob per wallet
MIGRATION_VERSION_TARGET	= 2		# Keys are shared entities, referenced by id
METADATA_SCHEMA			= 3		# Written explicitly into every WalletMetadata JSON

KEY_LABEL_PREFIX		= "Key"		# Auto-generated labels: "Key 1", "Key 2", ...
ACCOUNT_LABEL_PREFIX		= "Account"

#
# BIP-39 Mnemonics
#
BITS_DEFAULT			= 128
BITS				= (128, 160, 192, 224, 256)

#
# HD Wallet Derivation Paths
#
#     m / purpose' / coin_type' / account' / change / address_index
#
# BIP-48 multisig:
#
#     m / 48' / coin_type' / account' / script_type' / change / address_index
#
COIN_MAINNET			= 0
COIN_TESTNET			= 1
PURPOSE_DEFAULT			= 84

PURPOSE_SCRIPT_TYPE		= {
    44:		"P2PKH",
    49:		"P2SH_P2WPKH",
    84:		"P2WPKH",
    86:		"P2TR",
}
BIP48_SCRIPT_TYPE		= {
    "P2SH_P2WSH":	1,
    "P2WSH":		2,
}

# Address gap scanned when checking whether an address belongs to a wallet
ADDRESS_SCAN_GAP		= 2000
MULTISIG_SCAN_GAP		= 500
ADDRESS_COUNT			= 10		# Default number of addresses to display
