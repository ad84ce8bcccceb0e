# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""Blocklist sources other than the blocklist file."""
