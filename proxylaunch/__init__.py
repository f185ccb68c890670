# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch - Proxy-backed application launcher

Starts and supervises a local mitmproxy instance, launches a target
application with its traffic routed through it, and keeps itself up to
date from a remote release manifest.
"""

__version__ = "1.3"
__author__ = "The proxylaunch Authors"
