"""Rule engine core: parse rule strings into ASTs, combine them and evaluate them."""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, auto
from operator import eq, ge, gt, le, lt, ne
from typing import Any, Iterator, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

LiteralValue = Union[str, int, float, bool]

COMPARISON_OPERATORS = ('==', '!=', '>', '<', '>=', '<=')
CONNECTIVES = ('AND', 'OR')

_IDENTIFIER_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*\Z')

_COMPARATORS = {
    '==': eq,
    '!=': ne,
    '>': gt,
    '<': lt,
    '>=': ge,
    '<=': le,
}


# Errors

class RuleError(ValueError):
    """Base class for all rule-related errors."""


class RuleSyntaxError(RuleError):
    """Raised when a rule string is malformed."""

    def __init__(self, message: str, position: Optional[int] = None):
        self.position = position
        super().__init__(f"{message} at position {position}" if position is not None else message)


class RuleArgumentError(RuleError):
    """Raised when the engine is called with unusable arguments."""


class RuleEvaluationError(RuleError):
    """Raised when a rule cannot be evaluated against the given data."""


class RuleDocumentError(RuleError):
    """Raised when a stored AST document does not have the expected shape."""


def value_kind(value: Any) -> Optional[str]:
    """Return 'boolean', 'number' or 'string' for supported values, else None.

    bool is checked first because it is a subclass of int.
    """
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    return None


# Define the Node classes

@dataclass(frozen=True)
class Node:
    """Base class for AST nodes. Nodes are immutable once built."""


@dataclass(frozen=True)
class Comparison(Node):
    """Leaf node: ``attribute operator literal``."""
    attribute: str
    operator: str
    literal: LiteralValue

    type = 'operand'

    def __post_init__(self):
        if not isinstance(self.attribute, str) or not _IDENTIFIER_RE.match(self.attribute):
            raise RuleArgumentError(f"Invalid attribute name: {self.attribute!r}")
        if self.operator not in COMPARISON_OPERATORS:
            raise RuleArgumentError(f"Unsupported comparison operator: {self.operator!r}")
        if value_kind(self.literal) is None:
            raise RuleArgumentError(f"Unsupported literal: {self.literal!r}")


@dataclass(frozen=True)
class Logical(Node):
    """Internal node joining two subtrees with AND or OR."""
    connective: str
    left: Node
    right: Node

    type = 'operator'

    def __post_init__(self):
        if self.connective not in CONNECTIVES:
            raise RuleArgumentError(f"Unsupported connective: {self.connective!r}")
        if not isinstance(self.left, Node) or not isinstance(self.right, Node):
            raise RuleArgumentError("Logical nodes require both a left and a right child")


# Tokenizer

def _is_digit(char: Optional[str]) -> bool:
    return char is not None and '0' <= char <= '9'


def _is_identifier_start(char: Optional[str]) -> bool:
    return char is not None and char.isascii() and (char.isalpha() or char == '_')


def _is_identifier_char(char: Optional[str]) -> bool:
    return _is_identifier_start(char) or _is_digit(char)


class TokenType(Enum):
    NUMBER = auto()
    STRING = auto()
    BOOLEAN = auto()
    IDENTIFIER = auto()
    OPERATOR = auto()
    AND = auto()
    OR = auto()
    LPAREN = auto()
    RPAREN = auto()
    EOF = auto()


LITERAL_TOKENS = (TokenType.NUMBER, TokenType.STRING, TokenType.BOOLEAN)


@dataclass
class Token:
    type: TokenType
    value: Any
    position: int


class Lexer:
    """Tokenizes rule strings.

    A bare ``=`` is read as ``==``, so ``department = 'Sales'`` means equality.
    Quoted text is never rewritten.
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.current_char = self.text[0] if self.text else None

    def error(self, message: str) -> None:
        raise RuleSyntaxError(message, self.pos)

    def advance(self) -> None:
        self.pos += 1
        self.current_char = self.text[self.pos] if self.pos < len(self.text) else None

    def peek(self) -> Optional[str]:
        peek_pos = self.pos + 1
        return self.text[peek_pos] if peek_pos < len(self.text) else None

    def _number(self) -> Token:
        """Parse an integer or decimal literal, with an optional leading minus."""
        start_pos = self.pos
        result = ''
        if self.current_char == '-':
            result += '-'
            self.advance()
        while _is_digit(self.current_char):
            result += self.current_char
            self.advance()

        if self.current_char == '.':
            if not _is_digit(self.peek()):
                self.error(f"Malformed number '{result}.'")
            result += '.'
            self.advance()
            while _is_digit(self.current_char):
                result += self.current_char
                self.advance()
            return Token(TokenType.NUMBER, float(result), start_pos)

        return Token(TokenType.NUMBER, int(result), start_pos)

    def _string(self) -> Token:
        start_pos = self.pos
        quote_char = self.current_char
        self.advance()

        result = ''
        while self.current_char is not None and self.current_char != quote_char:
            result += self.current_char
            self.advance()

        if self.current_char is None:
            raise RuleSyntaxError("Unterminated string literal", start_pos)

        self.advance()
        return Token(TokenType.STRING, result, start_pos)

    def _identifier(self) -> Token:
        """Parse an identifier, a connective keyword or a boolean literal."""
        start_pos = self.pos
        result = ''
        while _is_identifier_char(self.current_char):
            result += self.current_char
            self.advance()

        if result == 'true':
            return Token(TokenType.BOOLEAN, True, start_pos)
        if result == 'false':
            return Token(TokenType.BOOLEAN, False, start_pos)
        if result.upper() == 'AND':
            return Token(TokenType.AND, 'AND', start_pos)
        if result.upper() == 'OR':
            return Token(TokenType.OR, 'OR', start_pos)

        return Token(TokenType.IDENTIFIER, result, start_pos)

    def _symbol_pair(self, token_type: TokenType, value: str) -> Token:
        start_pos = self.pos
        self.advance()
        self.advance()
        return Token(token_type, value, start_pos)

    def get_next_token(self) -> Token:
        while self.current_char is not None:
            char = self.current_char

            if char in ' \t\r\n':
                self.advance()
                continue

            if _is_digit(char) or (char == '-' and _is_digit(self.peek())):
                return self._number()

            if char in ("'", '"'):
                return self._string()

            if _is_identifier_start(char):
                return self._identifier()

            start_pos = self.pos

            if char in '<>':
                if self.peek() == '=':
                    return self._symbol_pair(TokenType.OPERATOR, char + '=')
                self.advance()
                return Token(TokenType.OPERATOR, char, start_pos)

            if char == '=':
                if self.peek() == '=':
                    return self._symbol_pair(TokenType.OPERATOR, '==')
                self.advance()
                return Token(TokenType.OPERATOR, '==', start_pos)

            if char == '!':
                if self.peek() == '=':
                    return self._symbol_pair(TokenType.OPERATOR, '!=')
                self.error("Unrecognized operator '!'. Did you mean '!='?")

            if char == '&':
                if self.peek() == '&':
                    return self._symbol_pair(TokenType.AND, 'AND')
                self.error("Unrecognized operator '&'. Did you mean 'AND'?")

            if char == '|':
                if self.peek() == '|':
                    return self._symbol_pair(TokenType.OR, 'OR')
                self.error("Unrecognized operator '|'. Did you mean 'OR'?")

            if char == '(':
                self.advance()
                return Token(TokenType.LPAREN, '(', start_pos)

            if char == ')':
                self.advance()
                return Token(TokenType.RPAREN, ')', start_pos)

            self.error(f"Invalid character '{char}'")

        return Token(TokenType.EOF, None, self.pos)

    def tokenize(self) -> Iterator[Token]:
        while True:
            token = self.get_next_token()
            yield token
            if token.type == TokenType.EOF:
                break


# Parser

class Parser:
    """Recursive descent parser; AND binds tighter than OR, both left-associative."""

    def __init__(self, lexer: Lexer):
        self.lexer = lexer
        self.previous_type: Optional[TokenType] = None
        self.current_token = self.lexer.get_next_token()

    def error(self, message: str) -> None:
        raise RuleSyntaxError(message, self.current_token.position)

    def consume(self, token_type: TokenType) -> Token:
        token = self.current_token
        if token.type != token_type:
            self.error(f"Expected {token_type.name}, found {token.type.name}")
        self.previous_type = token.type
        self.current_token = self.lexer.get_next_token()
        return token

    def _implicit_and(self) -> bool:
        """``(a > 1) (b < 2)`` reads as ``(a > 1) AND (b < 2)``.

        Kept for compatibility with rules written without the connective.
        """
        return self.previous_type == TokenType.RPAREN and self.current_token.type == TokenType.LPAREN

    def parse(self) -> Node:
        if self.current_token.type == TokenType.EOF:
            self.error("Rule string is empty")
        node = self.expression()
        if self.current_token.type == TokenType.RPAREN:
            self.error("Unbalanced parentheses: unexpected ')'")
        if self.current_token.type != TokenType.EOF:
            self.error(f"Unexpected token {self.current_token.value!r} after expression")
        return node

    def expression(self) -> Node:
        """Expr := Term (OR Term)*"""
        node = self.term()
        while self.current_token.type == TokenType.OR:
            self.consume(TokenType.OR)
            node = Logical('OR', node, self.term())
        return node

    def term(self) -> Node:
        """Term := Factor (AND Factor)*"""
        node = self.factor()
        while self.current_token.type == TokenType.AND or self._implicit_and():
            if self.current_token.type == TokenType.AND:
                self.consume(TokenType.AND)
            node = Logical('AND', node, self.factor())
        return node

    def factor(self) -> Node:
        """Factor := '(' Expr ')' | Comparison"""
        if self.current_token.type == TokenType.LPAREN:
            self.consume(TokenType.LPAREN)
            node = self.expression()
            if self.current_token.type != TokenType.RPAREN:
                self.error("Unbalanced parentheses: expected ')'")
            self.consume(TokenType.RPAREN)
            return node
        return self.comparison()

    def comparison(self) -> Node:
        """Comparison := Identifier CompOp Literal"""
        token = self.current_token
        if token.type != TokenType.IDENTIFIER:
            if token.type == TokenType.EOF:
                self.error("Missing operand at end of rule")
            self.error(f"Missing operand: expected an attribute name, found {token.value!r}")
        attribute = self.consume(TokenType.IDENTIFIER).value

        if self.current_token.type != TokenType.OPERATOR:
            self.error(f"Expected a comparison operator after '{attribute}'")
        operator = self.consume(TokenType.OPERATOR).value

        if self.current_token.type not in LITERAL_TOKENS:
            self.error(f"Missing literal after '{attribute} {operator}'")
        literal = self.current_token.value
        self.consume(self.current_token.type)

        return Comparison(attribute, operator, literal)


def parse_rule(rule_string: str) -> Node:
    """Parse a rule string into an AST.

    Raises:
        RuleSyntaxError: if the text is empty or malformed.
    """
    if not isinstance(rule_string, str):
        raise RuleSyntaxError("Rule string must be text")
    logger.debug("Parsing rule string: %s", rule_string)
    try:
        return Parser(Lexer(rule_string.strip())).parse()
    except RecursionError:
        raise RuleSyntaxError("Rule is nested too deeply") from None


# Stringify

def format_literal(value: LiteralValue) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        # Plain decimal notation, the lexer has no exponent syntax.
        return format(Decimal(repr(value)), 'f')
    if "'" in value:
        return f'"{value}"'
    return f"'{value}'"


def to_rule_string(node: Node) -> str:
    """Render an AST as rule text that parses back to an equivalent tree."""
    if isinstance(node, Comparison):
        return f"{node.attribute} {node.operator} {format_literal(node.literal)}"

    def wrap(child):
        text = to_rule_string(child)
        return f"({text})" if isinstance(child, Logical) else text

    return f"{wrap(node.left)} {node.connective} {wrap(node.right)}"


# Combine

def majority_connective(roots: Sequence[Node]) -> str:
    """Pick the connective most used at the top of the given roots; ties go to OR."""
    counts = Counter(root.connective for root in roots if isinstance(root, Logical))
    return 'AND' if counts['AND'] > counts['OR'] else 'OR'


def combine_rules(roots: Sequence[Node], rule_strings: Optional[Sequence[str]] = None) -> Tuple[Node, str]:
    """Merge several rule ASTs into one, joined by the majority top connective.

    The input trees are not modified; the merged tree references them directly,
    which is safe because nodes are immutable.

    Returns:
        The merged root and its textual form, e.g. ``(age > 30) OR (salary > 50000)``.

    Raises:
        RuleArgumentError: if no roots are given or the strings do not line up.
    """
    roots = list(roots)
    if not roots:
        raise RuleArgumentError("At least one rule is required to combine")
    for root in roots:
        if not isinstance(root, Node):
            raise RuleArgumentError(f"Cannot combine {type(root).__name__}, expected a rule AST")

    if rule_strings is None:
        rule_strings = [to_rule_string(root) for root in roots]
    else:
        rule_strings = list(rule_strings)
        if len(rule_strings) != len(roots):
            raise RuleArgumentError(
                f"Got {len(roots)} rules but {len(rule_strings)} rule strings"
            )
        for text in rule_strings:
            if not isinstance(text, str):
                raise RuleArgumentError(f"Rule strings must be text, got {type(text).__name__}")

    connective = majority_connective(roots)
    logger.debug("Combining %d rules with %s", len(roots), connective)

    combined_ast = None
    for root in roots:
        if combined_ast is None:
            combined_ast = root
        else:
            combined_ast = Logical(connective, combined_ast, root)

    combined_string = f" {connective} ".join(f"({text.strip()})" for text in rule_strings)
    return combined_ast, combined_string


def combine_rule_strings(rule_strings: Sequence[str]) -> Tuple[Node, str]:
    """Parse each rule string and combine the results."""
    rule_strings = list(rule_strings)
    roots = [parse_rule(rule_string) for rule_string in rule_strings]
    return combine_rules(roots, rule_strings)


# Evaluate

def _compare(node: Comparison, data: Mapping[str, Any]) -> bool:
    if node.attribute not in data:
        raise RuleEvaluationError(f"Attribute '{node.attribute}' is missing from the data")
    attribute_value = data[node.attribute]

    data_kind = value_kind(attribute_value)
    if data_kind is None:
        raise RuleEvaluationError(
            f"Attribute '{node.attribute}' has unsupported type {type(attribute_value).__name__}"
        )
    literal_kind = value_kind(node.literal)
    if data_kind != literal_kind:
        raise RuleEvaluationError(
            f"Cannot compare {data_kind} attribute '{node.attribute}' "
            f"with {literal_kind} literal using '{node.operator}'"
        )
    if data_kind == 'boolean' and node.operator not in ('==', '!='):
        raise RuleEvaluationError(
            f"Operator '{node.operator}' is not defined for boolean attribute '{node.attribute}'"
        )

    return _COMPARATORS[node.operator](attribute_value, node.literal)


def evaluate_rule(node: Node, data: Mapping[str, Any]) -> bool:
    """Evaluate an AST against a data record.

    AND and OR short-circuit left to right, so errors in a right branch are
    only raised when that branch is reached. The left spine is walked with a
    loop, so rules combined from thousands of rules evaluate without recursing
    once per rule.

    Raises:
        RuleEvaluationError: on a missing attribute or incompatible types.
    """
    if not isinstance(data, Mapping):
        raise RuleEvaluationError("Data must be a mapping of attribute names to values")

    spine = []
    while isinstance(node, Logical):
        spine.append(node)
        node = node.left

    if not isinstance(node, Comparison):
        raise RuleEvaluationError(f"Unknown node type: {type(node).__name__}")
    result = _compare(node, data)

    for logical in reversed(spine):
        if logical.connective == 'AND' and not result:
            continue
        if logical.connective == 'OR' and result:
            continue
        result = evaluate_rule(logical.right, data)
    return result


# Document (de)serialization

def node_to_dict(node: Node) -> dict:
    if isinstance(node, Logical):
        return {
            "type": "operator",
            "value": node.connective,
            "left": node_to_dict(node.left),
            "right": node_to_dict(node.right),
        }
    return {
        "type": "operand",
        "value": {
            "attribute": node.attribute,
            "operator": node.operator,
            "literal": node.literal,
        },
        "left": None,
        "right": None,
    }


def node_from_dict(ast_dict: Mapping[str, Any]) -> Node:
    """Rebuild an AST from its stored document form, rejecting any other shape."""
    if not isinstance(ast_dict, Mapping):
        raise RuleDocumentError(f"AST node must be an object, got {type(ast_dict).__name__}")

    node_type = ast_dict.get("type")
    left = ast_dict.get("left")
    right = ast_dict.get("right")
    value = ast_dict.get("value")

    if node_type == "operator":
        if left is None or right is None:
            raise RuleDocumentError("Operator node requires both 'left' and 'right'")
        left_node = node_from_dict(left)
        right_node = node_from_dict(right)
        try:
            return Logical(value, left_node, right_node)
        except RuleArgumentError as e:
            raise RuleDocumentError(str(e)) from e

    if node_type == "operand":
        if left is not None or right is not None:
            raise RuleDocumentError("Operand node must not have children")
        if not isinstance(value, Mapping):
            raise RuleDocumentError("Operand node value must be an object")
        missing = [key for key in ("attribute", "operator", "literal") if key not in value]
        if missing:
            raise RuleDocumentError(f"Operand node value is missing {', '.join(missing)}")
        try:
            return Comparison(value["attribute"], value["operator"], value["literal"])
        except RuleArgumentError as e:
            raise RuleDocumentError(str(e)) from e

    raise RuleDocumentError(f"Unknown AST node type: {node_type!r}")


# Rule record

@dataclass
class Rule:
    """A named rule: the source text plus the AST parsed from it."""
    name: str
    rule_string: str
    root: Node
    id: Optional[int] = None

    @classmethod
    def from_string(cls, name: str, rule_string: str) -> 'Rule':
        root = parse_rule(rule_string)
        return cls(name=name, rule_string=rule_string.strip(), root=root)

    def replace(self, rule_string: str) -> None:
        """Swap in a new rule string; the rule is left unchanged if it does not parse."""
        root = parse_rule(rule_string)
        self.rule_string = rule_string.strip()
        self.root = root

    def evaluate(self, data: Mapping[str, Any]) -> bool:
        return evaluate_rule(self.root, data)

    def to_dict(self) -> dict:
        rule_dict = {
            "name": self.name,
            "ruleString": self.rule_string,
            "root": node_to_dict(self.root),
        }
        if self.id is not None:
            rule_dict = {"id": self.id, **rule_dict}
        return rule_dict

    @classmethod
    def from_dict(cls, rule_dict: Mapping[str, Any]) -> 'Rule':
        try:
            name = rule_dict["name"]
            rule_string = rule_dict["ruleString"]
            root = rule_dict["root"]
        except (KeyError, TypeError) as e:
            raise RuleDocumentError(f"Rule document is missing {e}") from e
        return cls(name=name, rule_string=rule_string, root=node_from_dict(root), id=rule_dict.get("id"))
