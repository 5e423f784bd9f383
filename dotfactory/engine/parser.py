"""Recursive-descent DOT parser for pipeline files.

Implements a complete lexer + parser without any external graphviz
dependency.  The parser produces ``Graph``, ``Node``, ``Edge`` and
``Subgraph`` objects ready for linting and the transform pipeline.

Design goals:
- ``ParseError`` with line number and source snippet for actionable
  diagnostics; malformed input never yields a partial graph.
- Attribute values preserved verbatim (including multiline quoted strings),
  so unknown attributes survive a parse → serialise round trip.
- The DOT subset used by pipelines:
    - ``digraph`` declarations with optional ``strict`` and quoted names
    - Graph-level attributes: ``graph [...]`` and ``key = value``
    - Default blocks ``node [...]`` / ``edge [...]``, which apply only to
      statements that follow them inside the current ``{ }`` scope
    - ``subgraph name { ... }`` and anonymous ``{ ... }`` blocks, each
      opening a nested default scope
    - Node statements ``id [attr_list]`` and edge chains
      ``a -> b -> c [attr_list]``
    - ``//``, ``#`` and ``/* */`` comments (never inside quoted strings)
    - Quoted strings with ``\\"``, ``\\\\``, ``\\n``, ``\\t``, ``\\r``,
      ``\\uXXXX`` escapes; unknown escapes pass through unchanged

Grammar (simplified):
    file         := 'strict'? 'digraph' name? '{' stmt* '}'
    stmt         := graph_stmt | default_stmt | assign_stmt | subgraph
                  | node_stmt | edge_stmt | ';'
    graph_stmt   := 'graph' attr_list
    default_stmt := ('node' | 'edge') attr_list
    assign_stmt  := id '=' id
    subgraph     := ('subgraph' name?)? '{' stmt* '}'
    node_stmt    := id attr_list?
    edge_stmt    := id ('->' id)+ attr_list?
    attr_list    := '[' (key '=' value (',' | ';')?)* ']'

Scoping:
    Top-level node defaults are merged into a node's ``attrs`` the first
    time the node is created.  Defaults declared inside a subgraph are NOT
    merged at parse time; they are recorded on the innermost ``Subgraph`` as
    a ``SubgraphMember`` so ``flatten_subgraphs`` can apply the
    explicit > subgraph > global precedence and append subgraph classes.
    Edge defaults from every enclosing scope are resolved immediately.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path

from dotfactory.engine.exceptions import ParseError
from dotfactory.engine.graph import Edge, Graph, Node, Subgraph, SubgraphMember

logger = logging.getLogger(__name__)

__all__ = ["DotParser", "ParseError", "parse_dot", "parse_file"]


# ---------------------------------------------------------------------------
# Token types and the Token dataclass
# ---------------------------------------------------------------------------

class TT(Enum):  # Token Type
    """Enumeration of all token types produced by the lexer."""
    KEYWORD    = auto()
    IDENT      = auto()
    STRING     = auto()
    NUMBER     = auto()
    ARROW      = auto()
    LBRACE     = auto()
    RBRACE     = auto()
    LBRACKET   = auto()
    RBRACKET   = auto()
    EQUALS     = auto()
    SEMI       = auto()
    COMMA      = auto()
    EOF        = auto()


# Keywords that get their own TT.KEYWORD token (case-sensitive in DOT)
_KEYWORDS: frozenset[str] = frozenset(
    {"digraph", "graph", "subgraph", "node", "edge", "strict"}
)

_SIMPLE_ESCAPES: dict[str, str] = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
}


@dataclass(frozen=True)
class Token:
    """A single lexical token with its type, value, and source location."""
    type: TT
    value: str
    line: int   # 1-based line in the source file


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------

class _Lexer:
    """Converts a DOT source string into a flat list of tokens."""

    def __init__(self, source: str) -> None:
        self._src = source
        self._pos = 0
        self._line = 1
        self._tokens: list[Token] = []
        self._lines = source.splitlines()

    def tokenize(self) -> list[Token]:
        """Tokenize the full source and return the token list."""
        while self._pos < len(self._src):
            self._skip_whitespace_and_comments()
            if self._pos >= len(self._src):
                break
            ch = self._src[self._pos]
            tok_line = self._line

            if ch == '"':
                value = self._read_string()
                self._tokens.append(Token(TT.STRING, value, tok_line))
            elif ch == '-' and self._peek(1) == '>':
                self._pos += 2
                self._tokens.append(Token(TT.ARROW, "->", tok_line))
            elif ch == '-' and self._peek(1) == '-':
                self._error("Undirected edge '--' is not allowed in a digraph")
            elif ch == '{':
                self._pos += 1
                self._tokens.append(Token(TT.LBRACE, "{", tok_line))
            elif ch == '}':
                self._pos += 1
                self._tokens.append(Token(TT.RBRACE, "}", tok_line))
            elif ch == '[':
                self._pos += 1
                self._tokens.append(Token(TT.LBRACKET, "[", tok_line))
            elif ch == ']':
                self._pos += 1
                self._tokens.append(Token(TT.RBRACKET, "]", tok_line))
            elif ch == '=':
                self._pos += 1
                self._tokens.append(Token(TT.EQUALS, "=", tok_line))
            elif ch == ';':
                self._pos += 1
                self._tokens.append(Token(TT.SEMI, ";", tok_line))
            elif ch == ',':
                self._pos += 1
                self._tokens.append(Token(TT.COMMA, ",", tok_line))
            elif ch.isdigit() or (ch in '-.' and self._peek(1, '').isdigit()):
                value = self._read_number()
                self._tokens.append(Token(TT.NUMBER, value, tok_line))
            elif self._is_ident_start(ch):
                value = self._read_ident()
                tt = TT.KEYWORD if value in _KEYWORDS else TT.IDENT
                self._tokens.append(Token(tt, value, tok_line))
            else:
                self._error(f"Unexpected character {ch!r}")

        self._tokens.append(Token(TT.EOF, "", self._line))
        return self._tokens

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _error(self, message: str) -> None:
        snippet = ""
        if 1 <= self._line <= len(self._lines):
            snippet = self._lines[self._line - 1].strip()[:80]
        raise ParseError(message, line=self._line, snippet=snippet)

    def _peek(self, offset: int = 1, default: str = "") -> str:
        idx = self._pos + offset
        return self._src[idx] if idx < len(self._src) else default

    def _skip_whitespace_and_comments(self) -> None:
        while self._pos < len(self._src):
            ch = self._src[self._pos]
            if ch in ' \t\r\ufeff':
                self._pos += 1
            elif ch == '\n':
                self._pos += 1
                self._line += 1
            elif ch == '/' and self._peek() == '/':
                while self._pos < len(self._src) and self._src[self._pos] != '\n':
                    self._pos += 1
            elif ch == '/' and self._peek() == '*':
                start_line = self._line
                self._pos += 2
                while True:
                    if self._pos >= len(self._src) - 1:
                        self._line = start_line
                        self._error("Unterminated block comment")
                    if self._src[self._pos] == '\n':
                        self._line += 1
                    if self._src[self._pos] == '*' and self._src[self._pos + 1] == '/':
                        self._pos += 2
                        break
                    self._pos += 1
            elif ch == '#' and self._at_line_start():
                while self._pos < len(self._src) and self._src[self._pos] != '\n':
                    self._pos += 1
            else:
                break

    def _at_line_start(self) -> bool:
        line_start = self._src.rfind('\n', 0, self._pos) + 1
        return not self._src[line_start:self._pos].strip()

    def _read_string(self) -> str:
        """Read a double-quoted string, decoding standard escape sequences."""
        start_line = self._line
        self._pos += 1  # skip opening "
        chars: list[str] = []
        while self._pos < len(self._src):
            ch = self._src[self._pos]
            if ch == '\\' and self._pos + 1 < len(self._src):
                nxt = self._src[self._pos + 1]
                if nxt in _SIMPLE_ESCAPES:
                    chars.append(_SIMPLE_ESCAPES[nxt])
                    self._pos += 2
                elif nxt == 'u' and self._is_hex(self._src[self._pos + 2:self._pos + 6]):
                    chars.append(chr(int(self._src[self._pos + 2:self._pos + 6], 16)))
                    self._pos += 6
                elif nxt == '\n':
                    # Line continuation inside a quoted string
                    self._pos += 2
                    self._line += 1
                else:
                    # Unknown escape (e.g. DOT's \l): keep both characters
                    chars.append('\\')
                    chars.append(nxt)
                    self._pos += 2
            elif ch == '"':
                self._pos += 1  # skip closing "
                return ''.join(chars)
            else:
                if ch == '\n':
                    self._line += 1
                chars.append(ch)
                self._pos += 1
        self._line = start_line
        self._error("Unterminated quoted string")
        return ""  # unreachable, for type checkers

    @staticmethod
    def _is_hex(text: str) -> bool:
        return len(text) == 4 and all(c in "0123456789abcdefABCDEF" for c in text)

    def _read_number(self) -> str:
        """Read a numeral; trailing unit letters (``30s``) stay in the token."""
        start = self._pos
        if self._src[self._pos] == '-':
            self._pos += 1
        while self._pos < len(self._src) and (
            self._src[self._pos].isalnum() or self._src[self._pos] in '._'
        ):
            self._pos += 1
        return self._src[start:self._pos]

    def _read_ident(self) -> str:
        """Read an identifier (letters, digits, underscores, dots, inner hyphens)."""
        start = self._pos
        while self._pos < len(self._src):
            ch = self._src[self._pos]
            if ch == '-' and self._peek(1) == '>':
                break
            if not self._is_ident_body(ch):
                break
            self._pos += 1
        return self._src[start:self._pos]

    @staticmethod
    def _is_ident_start(ch: str) -> bool:
        return ch.isalpha() or ch == '_'

    @staticmethod
    def _is_ident_body(ch: str) -> bool:
        return ch.isalnum() or ch in ('_', '-', '.')


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------

@dataclass
class _Scope:
    """One ``{ }`` level: its default blocks and, below the root, its subgraph."""
    node_defaults: dict[str, str] = field(default_factory=dict)
    edge_defaults: dict[str, str] = field(default_factory=dict)
    subgraph: Subgraph | None = None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class _Parser:
    """Recursive-descent parser that builds the ``Graph`` model.

    Consumes the flat token list produced by ``_Lexer``.
    """

    def __init__(self, tokens: list[Token], source_lines: list[str]) -> None:
        self._tokens = tokens
        self._pos = 0
        self._source_lines = source_lines

        # Accumulated output
        self._graph_name: str = ""
        self._graph_attrs: dict[str, str] = {}
        self._nodes: dict[str, Node] = {}   # preserves declaration order
        self._edges: list[Edge] = []
        self._subgraphs: list[Subgraph] = []
        self._scopes: list[_Scope] = [_Scope()]

    # ------------------------------------------------------------------
    # Token navigation
    # ------------------------------------------------------------------

    def _current(self) -> Token:
        return self._tokens[self._pos]

    def _advance(self) -> Token:
        tok = self._tokens[self._pos]
        if self._pos < len(self._tokens) - 1:
            self._pos += 1
        return tok

    def _expect(self, tt: TT, what: str = "") -> Token:
        tok = self._current()
        if tok.type != tt:
            expected = what or tt.name
            got = tok.value or tok.type.name
            self._raise(f"Expected {expected} but got {got!r}", tok)
        return self._advance()

    def _match(self, *types: TT) -> bool:
        return self._current().type in types

    def _match_keyword(self, value: str) -> bool:
        tok = self._current()
        return tok.type == TT.KEYWORD and tok.value == value

    def _raise(self, message: str, tok: Token | None = None) -> None:
        line = tok.line if tok else 0
        snippet = ""
        if line and 1 <= line <= len(self._source_lines):
            snippet = self._source_lines[line - 1].strip()[:80]
        raise ParseError(message, line=line, snippet=snippet)

    @property
    def _scope(self) -> _Scope:
        return self._scopes[-1]

    # ------------------------------------------------------------------
    # Top-level parse
    # ------------------------------------------------------------------

    def parse(self) -> Graph:
        """Parse all tokens and return a ``Graph`` instance."""
        self._parse_graph()
        root = self._scopes[0]
        return Graph(
            name=self._graph_name,
            attrs=self._graph_attrs,
            nodes=self._nodes,
            edges=self._edges,
            node_defaults=dict(root.node_defaults),
            edge_defaults=dict(root.edge_defaults),
            subgraphs=self._subgraphs,
        )

    def _parse_graph(self) -> None:
        """Parse: ('strict')? 'digraph' name? '{' stmt* '}' EOF"""
        if self._match_keyword("strict"):
            self._advance()

        tok = self._current()
        if not self._match_keyword("digraph"):
            self._raise(f"Expected 'digraph' at start of file, got {tok.value!r}", tok)
        self._advance()

        if self._match(TT.IDENT, TT.STRING, TT.NUMBER):
            self._graph_name = self._advance().value

        self._expect(TT.LBRACE, "'{'")
        self._parse_stmt_list()
        self._expect(TT.RBRACE, "'}'")

        if not self._match(TT.EOF):
            self._raise("Unexpected content after the closing '}'", self._current())

    def _parse_stmt_list(self) -> None:
        """Parse zero or more statements up to the closing brace."""
        while not self._match(TT.RBRACE):
            if self._match(TT.EOF):
                self._raise("Unexpected end of input: missing closing '}'", self._current())
            if self._match(TT.SEMI, TT.COMMA):
                self._advance()
                continue
            self._parse_stmt()

    def _parse_stmt(self) -> None:
        """Dispatch a single statement to its handler."""
        tok = self._current()

        if self._match_keyword("graph"):
            self._advance()
            attrs = self._parse_attr_list() if self._match(TT.LBRACKET) else {}
            self._set_graph_attrs(attrs)
            return

        if self._match_keyword("node"):
            self._advance()
            self._scope.node_defaults.update(self._parse_attr_list())
            return

        if self._match_keyword("edge"):
            self._advance()
            self._scope.edge_defaults.update(self._parse_attr_list())
            return

        if self._match_keyword("subgraph") or self._match(TT.LBRACE):
            self._parse_subgraph()
            return

        if self._match(TT.IDENT, TT.STRING, TT.NUMBER):
            if self._tokens[self._pos + 1].type == TT.EQUALS:
                key = self._advance().value
                self._advance()  # '='
                value_tok = self._current()
                if not self._match(TT.IDENT, TT.STRING, TT.NUMBER):
                    self._raise(f"Expected value after '{key} =', got {value_tok.value!r}", value_tok)
                self._set_graph_attrs({key: self._advance().value})
                return
            self._parse_node_or_edge_stmt()
            return

        self._raise(f"Unexpected token {tok.value or tok.type.name!r}", tok)

    def _set_graph_attrs(self, attrs: dict[str, str]) -> None:
        subgraph = self._scope.subgraph
        if subgraph is None:
            self._graph_attrs.update(attrs)
        else:
            subgraph.attrs.update(attrs)

    def _parse_subgraph(self) -> None:
        """Parse ``subgraph name? { ... }`` as a nested default scope."""
        name = ""
        if self._match_keyword("subgraph"):
            self._advance()
            if self._match(TT.IDENT, TT.STRING, TT.NUMBER):
                name = self._advance().value
        self._expect(TT.LBRACE, "'{' after subgraph")

        subgraph = Subgraph(name=name, parent=self._scope.subgraph)
        self._subgraphs.append(subgraph)
        self._scopes.append(_Scope(subgraph=subgraph))
        try:
            self._parse_stmt_list()
        finally:
            self._scopes.pop()
        self._expect(TT.RBRACE, "'}' closing subgraph")
        logger.debug("Parsed subgraph %r with %d member(s)", name, len(subgraph.members))

    def _parse_node_or_edge_stmt(self) -> None:
        """Parse either a node statement or an edge chain.

        Edge chains: ``a -> b -> c [attrs]``
        Node stmt:   ``a [attrs]`` or just ``a``
        """
        first_tok = self._advance()
        first_id = first_tok.value

        if self._match(TT.ARROW):
            chain: list[str] = [first_id]
            while self._match(TT.ARROW):
                self._advance()  # consume '->'
                if self._match(TT.LBRACE) or self._match_keyword("subgraph"):
                    self._raise("Subgraphs are not supported as edge endpoints", self._current())
                if not self._match(TT.IDENT, TT.STRING, TT.NUMBER):
                    self._raise("Expected node identifier after '->'", self._current())
                chain.append(self._advance().value)

            attrs: dict[str, str] = {}
            if self._match(TT.LBRACKET):
                attrs = self._parse_attr_list()

            # Nodes referenced only by edges are created with the defaults in scope
            for nid in chain:
                if nid not in self._nodes:
                    self._add_node(nid, {})

            edge_attrs: dict[str, str] = {}
            for scope in self._scopes:
                edge_attrs.update(scope.edge_defaults)
            edge_attrs.update(attrs)
            for src, dst in zip(chain, chain[1:]):
                self._edges.append(Edge(source=src, target=dst, attrs=dict(edge_attrs)))
        else:
            attrs = {}
            if self._match(TT.LBRACKET):
                attrs = self._parse_attr_list()
            self._add_node(first_id, attrs)

        if self._match(TT.SEMI):
            self._advance()

    # ------------------------------------------------------------------
    # Attribute list parser
    # ------------------------------------------------------------------

    def _parse_attr_list(self) -> dict[str, str]:
        """Parse ``[ key=value (, | ;)? ... ]`` (possibly repeated) into a dict."""
        attrs: dict[str, str] = {}
        while self._match(TT.LBRACKET):
            self._advance()
            while not self._match(TT.RBRACKET):
                if self._match(TT.COMMA, TT.SEMI):
                    self._advance()
                    continue
                key_tok = self._current()
                if not self._match(TT.IDENT, TT.STRING, TT.NUMBER, TT.KEYWORD):
                    self._raise(f"Expected attribute key, got {key_tok.value or key_tok.type.name!r}", key_tok)
                key = self._advance().value

                self._expect(TT.EQUALS, f"'=' after attribute '{key}'")

                val_tok = self._current()
                if not self._match(TT.STRING, TT.IDENT, TT.NUMBER, TT.KEYWORD):
                    self._raise(f"Expected attribute value after '{key}=', got {val_tok.value or val_tok.type.name!r}", val_tok)
                attrs[key] = self._advance().value
            self._advance()  # ']'
        return attrs

    # ------------------------------------------------------------------
    # Node creation
    # ------------------------------------------------------------------

    def _add_node(self, node_id: str, explicit: dict[str, str]) -> None:
        """Create *node_id* with the defaults in scope, or merge into an existing node."""
        existing = self._nodes.get(node_id)
        if existing is not None:
            existing.attrs.update(explicit)
            existing.explicit_keys.update(explicit)
            return

        attrs = dict(self._scopes[0].node_defaults)
        attrs.update(explicit)
        self._nodes[node_id] = Node(id=node_id, attrs=attrs, explicit_keys=set(explicit))

        innermost = self._scope.subgraph
        if innermost is not None:
            chained: dict[str, str] = {}
            for scope in self._scopes[1:]:
                for key, value in scope.node_defaults.items():
                    if key == "class" and chained.get("class"):
                        chained["class"] = f"{chained['class']},{value}"
                    else:
                        chained[key] = value
            innermost.members.append(SubgraphMember(node_id=node_id, defaults=chained))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class DotParser:
    """High-level facade for the recursive-descent DOT parser.

    Usage::

        parser = DotParser()
        graph = parser.parse_file("/path/to/pipeline.dot")
        # or:
        graph = parser.parse_string(dot_source)

    Each call creates a fresh internal ``_Lexer`` and ``_Parser``.
    """

    def parse_file(self, path: str | Path) -> Graph:
        """Parse a DOT file from disk.

        Raises:
            ParseError: If the DOT source is malformed.
            FileNotFoundError: If *path* does not exist.
        """
        content = Path(path).read_text(encoding="utf-8")
        return self.parse_string(content)

    def parse_string(self, source: str) -> Graph:
        """Parse DOT source text.

        Raises:
            ParseError: If the DOT source is malformed.
        """
        source_lines = source.splitlines()
        tokens = _Lexer(source).tokenize()
        graph = _Parser(tokens, source_lines).parse()
        logger.debug(
            "Parsed digraph %r: %d node(s), %d edge(s), %d subgraph(s)",
            graph.name, len(graph.nodes), len(graph.edges), len(graph.subgraphs),
        )
        return graph


def parse_dot(source: str) -> Graph:
    """Parse a DOT source string.  Convenience wrapper around ``DotParser``."""
    return DotParser().parse_string(source)


def parse_file(path: str | Path) -> Graph:
    """Parse a DOT file from disk.  Convenience wrapper around ``DotParser``."""
    return DotParser().parse_file(path)
