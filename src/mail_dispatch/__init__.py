# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transactional notification mail dispatcher.

This package moves finished notification messages from an application to a
mail transport, with features including:

- Staging of mail generated inside a transaction until it commits
- Per-recipient rate limiting (per minute, per hour)
- Pluggable transports: local mail agent, SMTP relay, mbox file sinks
- Thread markers grouping notifications about one entity into a conversation
- Prometheus metrics, a click CLI and a FastAPI HTTP API

Example:
    Sending from inside a unit of work::

        from mail_dispatch.config_loader import load_settings
        from mail_dispatch.dispatcher import create_dispatcher

        dispatcher = await create_dispatcher(load_settings())
        async with dispatcher.persistence.transaction():
            await dispatcher.send(msg)

Authors:
    Softwell S.r.l.
"""
