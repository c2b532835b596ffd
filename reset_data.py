"""
reset_data.py
-------------
Utility script to clear bookings, payments and the reconciliation log from the
local data.pkl file. Vehicles are kept unless --all is given.

Usage:
    $ python reset_data.py [--all]

After running with --all, repopulate sample vehicles with:
    $ python seeds.py
"""

import sys

from rental_bookings.models.store import Store


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    store = Store.instance()

    store.clear(vehicles="--all" in argv)

    print("data.pkl has been cleared.")
    print("Tip: Run `python seeds.py` to regenerate demo vehicles.")


if __name__ == "__main__":
    main()
