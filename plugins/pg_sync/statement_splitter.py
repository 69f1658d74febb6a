"""
SQL Statement Splitting Module

Splits a multi-statement script into individually executable statements.

A semicolon ends a statement only outside dollar-quoted bodies ($$ ... $$ or
$tag$ ... $tag$), so DO blocks and function bodies stay whole. Fragments that
hold only comments are dropped, as are bare transaction wrappers (BEGIN,
COMMIT, ...): statements are executed one at a time and each commits on its
own.

Known limitation: semicolons inside single-quoted string literals or
comments are treated as terminators.
"""

from typing import List
import logging
import re

logger = logging.getLogger(__name__)

_DOLLAR_TAG = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)?\$')

TRANSACTION_WRAPPERS = frozenset({
    'BEGIN',
    'BEGIN TRANSACTION',
    'BEGIN WORK',
    'START TRANSACTION',
    'COMMIT',
    'COMMIT TRANSACTION',
    'COMMIT WORK',
    'END',
    'END TRANSACTION',
    'ROLLBACK',
    'ROLLBACK TRANSACTION',
    'ROLLBACK WORK',
})


def _strip_leading_comments(fragment: str) -> str:
    text = fragment.strip()
    while True:
        if text.startswith('--'):
            newline = text.find('\n')
            text = '' if newline == -1 else text[newline + 1:].lstrip()
        elif text.startswith('/*'):
            end = text.find('*/')
            text = '' if end == -1 else text[end + 2:].lstrip()
        else:
            return text.strip()


def _is_transaction_wrapper(statement: str) -> bool:
    return ' '.join(statement.upper().split()) in TRANSACTION_WRAPPERS


def split_statements(script: str) -> List[str]:
    """
    Split a script into executable statements.

    Args:
        script: SQL text, possibly holding DO blocks and comments

    Returns:
        Statements in script order, without trailing semicolons

    Examples:
        >>> split_statements("CREATE TABLE a (id int); DO $$ BEGIN NULL; END $$;")
        ['CREATE TABLE a (id int)', 'DO $$ BEGIN NULL; END $$']
    """
    fragments: List[str] = []
    start = 0
    i = 0
    open_tag = None
    length = len(script)

    while i < length:
        char = script[i]

        if char == '$':
            if open_tag is None:
                match = _DOLLAR_TAG.match(script, i)
                if match:
                    open_tag = match.group(0)
                    i = match.end()
                    continue
            elif script.startswith(open_tag, i):
                i += len(open_tag)
                open_tag = None
                continue
        elif char == ';' and open_tag is None:
            fragments.append(script[start:i])
            start = i + 1

        i += 1

    if open_tag is not None:
        logger.warning(f"Unterminated dollar-quoted body (opened with {open_tag}); keeping remainder as one statement")
    fragments.append(script[start:])

    statements = []
    for fragment in fragments:
        statement = _strip_leading_comments(fragment)
        if not statement:
            continue
        if _is_transaction_wrapper(statement):
            logger.debug(f"Dropping transaction wrapper: {statement}")
            continue
        statements.append(statement)

    return statements


class StatementSplitter:
    """Callable wrapper so the splitter can be injected into executors."""

    def split(self, script: str) -> List[str]:
        return split_statements(script)

    __call__ = split
