import os

from setuptools import setup

#
# All platforms
#
HERE				= os.path.dirname( os.path.abspath( __file__ ))

install_requires		= open( os.path.join( HERE, "requirements.txt" )).readlines()
tests_require			= open( os.path.join( HERE, "requirements-tests.txt" )).readlines()
options_require			= [
        'cli',		# btcvault[cli]:	Tabular output of keys, wallets and addresses
]
extras_require			= {
    option: list(
        # Remove whitespace, elide blank lines and comments
        ''.join( r.split() )
        for r in open( os.path.join( HERE, f"requirements-{option}.txt" )).readlines()
        if r.strip() and not r.strip().startswith( '#' )
    )
    for option in options_require
}
# Make btcvault[all] install all extra (non-tests) requirements, excluding duplicates
extras_require['all']		= list( set( sum( extras_require.values(), [] )))

# Since setuptools is retiring tests_require, add it as another option (but not included in 'all')
extras_require['tests']		= tests_require

# Must work if setup.py is run in the source distribution context, or from
# within the packaged distribution directory.
__version__			= None
try:
    exec( open( 'btcvault/version.py', 'r' ).read() )
except FileNotFoundError:
    exec( open( 'version.py', 'r' ).read() )

console_scripts			= [
    'btcvault		= btcvault.cli:cli',
]

entry_points			= {
    'console_scripts': 		console_scripts,
}

package_dir			= {
    "btcvault":			"./btcvault",
    "btcvault.cli":		"./btcvault/cli",
}

long_description_content_type	= 'text/markdown'
long_description		= """\
Self-custodial Bitcoin key custody, with password-gated encrypted key storage
and multisig cosigner reconciliation.

# Your keys, your Bitcoin

The [btcvault] package holds BIP-39 seeds as shared "key" entities, encrypted
at rest under a session key derived from your password (PBKDF2-HMAC-SHA256,
then HKDF-SHA256, then AES-256-GCM).  Wallets reference keys by id; a single
seed may back several single-signature wallets and act as a local cosigner in
any number of multisig wallets.

- BIP-32/39/44/49/84/86 derivation; BIP-48 multisig cosigner export
- Output descriptor and BIP-129 (BSMS) import and export
- Automatic re-binding of multisig cosigners to locally held keys
- Crash-safe password change: all keys are re-encrypted and committed atomically
- One-time, verify-before-delete migration from legacy per-wallet secrets
- Login attempt lockout, and an optional decoy identity

## Command line

    $ python3 -m pip install btcvault[cli]
    $ btcvault init
    $ btcvault generate | btcvault add-key
    $ btcvault keys
    $ btcvault add-wallet --script-type P2WPKH <keyId> Savings
    $ btcvault addresses <walletId>

[btcvault] <https://github.com/pjkundert/python-btcvault.git>
"""

classifiers			= [
    "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
    "License :: Other/Proprietary License",
    "Programming Language :: Python :: 3",
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Environment :: Console",
    "Topic :: Security :: Cryptography",
    "Topic :: Office/Business :: Financial",
]
project_urls			= {
    "Bug Tracker": "https://github.com/pjkundert/python-btcvault/issues",
}

setup(
    name			= "btcvault",
    version			= __version__,
    install_requires		= install_requires,
    tests_require		= tests_require,
    extras_require		= extras_require,
    packages			= package_dir.keys(),
    package_dir			= package_dir,
    include_package_data	= True,
    zip_safe			= True,
    entry_points		= entry_points,
    author			= "Perry Kundert",
    author_email		= "perry@dominionrnd.com",
    project_urls		= project_urls,
    description			= "Self-custodial Bitcoin key custody: encrypted BIP-39 key storage and multisig descriptor reconciliation",
    long_description		= long_description,
    long_description_content_type = long_description_content_type,
    license			= "Dual License; GPLv3 and Proprietary",
    keywords			= "Bitcoin BIP-32 BIP-39 BIP-48 BIP-129 BSMS multisig descriptor wallet key custody",
    url				= "https://github.com/pjkundert/python-btcvault",
    classifiers			= classifiers,
    python_requires		= ">=3.9",
)
