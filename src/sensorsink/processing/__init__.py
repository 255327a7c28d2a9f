# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Processing layer for SensorSink.
Accepts TCP connections, decodes sensor records and writes them to SQLite.
"""
