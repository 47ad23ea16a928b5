"""Python 3.14+ compatibility workarounds.

Applied once at package import time (from ``__init__.py``).

sqlglot's Oracle compiler executes ``Literal.number("binary_double_nan")``
at class-definition time. On Python 3.14+ the stricter ``decimal`` module
raises ``InvalidOperation`` for this non-numeric string, which breaks the
import of ``ibis.backends.sql.compilers``, and with it every view compiled
by freshtable.

The ``InvalidOperation`` trap is disabled before any ibis import and is
not re-enabled, since sqlglot may import further compiler modules lazily.
"""

from __future__ import annotations

import decimal as _decimal

_decimal.getcontext().traps[_decimal.InvalidOperation] = False
