# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Resources shipped with the distribution.

A distribution trusting a specific repository places that repository's
initial ``root.json`` here. This directory is a package only so that
``importlib.resources`` can locate it.
"""
