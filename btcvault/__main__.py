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
import sys

from .cli		import cli

if __name__ == "__main__":
    sys.exit( cli() )
