import hashlib
import logging
import re
from collections.abc import Mapping, Sequence
from contextlib import contextmanager


logger = logging.getLogger(__name__)


# Base type for every error the engine raises.
class TemplateError(Exception):
    pass


# Raised when a conditional expression can't be reduced to a well-formed
# boolean expression. `fragment` is the condition as written in the template.
class ParseError(TemplateError):

    def __init__(self, reason, fragment=""):
        super().__init__(f"{reason}: {fragment!r}" if fragment else reason)
        self.reason = reason
        self.fragment = fragment


# Raised when recursive expansion or callback output nests deeper than the
# parser allows, which in practice means cyclic data or a callback that keeps
# returning its own tag.
class RecursionLimitError(TemplateError):
    pass


# Lookups return MISSING when a key is absent, so a missing key can be told
# apart from a key holding None, False, 0 or "".
class Missing:

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = Missing()

SCALAR_TYPES = (str, int, float, bool, type(None))

NUMERIC_REGEX = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")


def is_collection(value):
    if isinstance(value, (str, bytes)):
        return False
    return isinstance(value, (Mapping, Sequence))


def is_numeric(value):
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and NUMERIC_REGEX.match(value) is not None


def to_number(value):
    if isinstance(value, (int, float)):
        return value
    return float(value) if is_numeric(value) else 0


def format_number(value):
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# Looks up a glue-delimited path like `user.address.city` in `data`. Mappings
# are searched by key, sequences by index and other objects by attribute. The
# lookup gives up and returns `default` at the first segment it can't find.
def resolve(path, data, default=None, glue="."):
    parts = path.split(glue) if glue in path else path.split(".")
    for part in parts:
        if isinstance(data, Mapping):
            if part in data:
                data = data[part]
            elif part.isdigit() and int(part) in data:
                data = data[int(part)]
            else:
                return default
        elif is_collection(data):
            if not part.isdigit() or int(part) >= len(data):
                return default
            data = data[int(part)]
        elif isinstance(data, SCALAR_TYPES) or part.startswith("_"):
            return default
        else:
            try:
                data = getattr(data, part)
            except AttributeError:
                return default
    return data


# Renders a value the way it appears in template output.
def to_string(value):
    if value is None or value is MISSING or value is False:
        return ""
    if value is True:
        return "1"
    if isinstance(value, float):
        return format_number(value)
    if is_collection(value):
        return ""
    return str(value)


# PHP-style truthiness: "", "0", 0, 0.0, None and empty collections are false.
def truthy(value):
    if value is None or value is MISSING:
        return False
    if isinstance(value, str):
        return value not in ("", "0")
    if is_collection(value):
        return len(value) > 0
    if isinstance(value, (bool, int, float)):
        return bool(value)
    return True


# The form a value takes as an operand of a conditional expression.
def to_scalar(value):
    if value is MISSING:
        return None
    if is_collection(value):
        return len(value) > 0
    if isinstance(value, SCALAR_TYPES):
        return value
    return str(value)


# Returns the source text of a literal that evaluates to `to_scalar(value)`.
def to_literal(value):
    value = to_scalar(value)
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


# Normalizes a value into a dict with lower-cased keys. Objects can provide
# their own conversion with a `to_array()` method.
def to_array(value=None):
    if hasattr(value, "to_array"):
        value = value.to_array()
    if value is None:
        items = ()
    elif isinstance(value, Mapping):
        items = value.items()
    elif is_collection(value):
        items = enumerate(value)
    elif isinstance(value, SCALAR_TYPES):
        items = [(0, value)]
    else:
        items = getattr(value, "__dict__", {}).items()
    return {key.lower() if isinstance(key, str) else key: item for key, item in items}


# Builds a child context. Keys from `local` win over keys from `base`.
def merge(base, local):
    merged = dict(base) if isinstance(base, Mapping) else {}
    if isinstance(local, Mapping):
        merged.update(local)
    elif not isinstance(local, SCALAR_TYPES):
        merged.update(to_array(local))
    return merged


# Returns the items a loop tag iterates over. Mappings yield their values.
def iterate(value):
    if isinstance(value, Mapping):
        return list(value.values())
    if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
        return []
    return list(value)


# An ExtractionStore hides regions of text behind opaque placeholders so that
# later passes can't re-parse them. Placeholders look like `<category>_<md5>`
# and are keyed on the replacement text, so stashing the same content twice
# gives the same placeholder. Entries are reference counted: an entry stays
# in the store until every stashed copy of its placeholder has been injected.
class ExtractionStore:

    def __init__(self):
        self.categories = {}
        self.references = {}

    def __len__(self):
        return sum(len(entries) for entries in self.categories.values())

    def stash(self, category, replacement):
        key = hashlib.md5(replacement.encode("utf-8")).hexdigest()
        self.categories.setdefault(category, {})[key] = replacement
        placeholder = f"{category}_{key}"
        self.references[placeholder] = self.references.get(placeholder, 0) + 1
        return placeholder

    def extract(self, category, raw, replacement, text):
        return text.replace(raw, self.stash(category, replacement), 1)

    # Entries can contain placeholders of their own, so we keep going until a
    # sweep changes nothing.
    def inject(self, text, category=None):
        names = [category] if category else list(self.categories)
        injected = True
        while injected:
            injected = False
            for name in names:
                entries = self.categories.get(name, {})
                for key in list(entries):
                    placeholder = f"{name}_{key}"
                    count = text.count(placeholder)
                    if count:
                        text = text.replace(placeholder, entries[key])
                        self.release(name, key, count)
                        injected = True
        return text

    def release(self, category, key, count):
        placeholder = f"{category}_{key}"
        remaining = self.references.get(placeholder, 0) - count
        if remaining > 0:
            self.references[placeholder] = remaining
        else:
            self.references.pop(placeholder, None)
            del self.categories[category][key]

    def take(self, other, category):
        entries = other.categories.pop(category, {})
        self.categories.setdefault(category, {}).update(entries)
        for key in entries:
            placeholder = f"{category}_{key}"
            count = other.references.pop(placeholder, 0)
            self.references[placeholder] = self.references.get(placeholder, 0) + count


# A Tag is a `{{ name params }}` opening tag. Once run through a BlockMatcher
# it also covers the content up to its matching close tag, if there is one.
class Tag:

    def __init__(self, name, start, end, parameters="", self_closing=False):
        self.name = name
        self.start = start
        self.end = end
        self.parameters = parameters
        self.self_closing = self_closing
        self.content = ""
        self.terminated = False

    def __str__(self):
        return f"({repr(self.name)}, {repr(self.parameters)}, {repr(self.content)})"


# A BlockMatcher finds the close tag that matches an opening tag. Same-named
# blocks opened in between are counted, so `{{x}}A{{x}}B{{/x}}C{{/x}}` gives
# the outer block the content `A{{x}}B{{/x}}C`.
class BlockMatcher:

    def __init__(self, name):
        self.name = name
        self.regex = re.compile(r"{{\s*(/)?" + re.escape(name) + r"(\s+[^}]*?)?\s*(/)?}}")

    def match(self, text, tag):
        if tag.self_closing:
            return tag
        depth = 1
        for match in self.regex.finditer(text, tag.end):
            closing, parameters, self_closing = match.groups()
            if closing:
                if self_closing or (parameters and parameters.strip()):
                    continue
                depth -= 1
                if depth == 0:
                    tag.content = text[tag.end:match.start()]
                    tag.end = match.end()
                    tag.terminated = True
                    break
            elif not self_closing:
                depth += 1
        return tag


# Tokens come in four types: "string", "number", "keyword" and "operator".
class Token:

    def __init__(self, token_type, text, position, value=None):
        self.type = token_type
        self.text = text
        self.position = position
        self.value = value

    def __str__(self):
        return f"({repr(self.type)}, {repr(self.text)})"


# The ExpressionLexer chops a compiled conditional expression into Tokens. By
# the time it runs every variable has been replaced by a literal, so the only
# words left are keywords.
class ExpressionLexer:

    operators = ("===", "!==", "==", "!=", "<>", "<=", ">=", "&&", "||", "<", ">", "!", "(", ")", "-")
    keywords = {"true": True, "false": False, "null": None}
    number_regex = re.compile(r"(\d+(\.\d+)?|\.\d+)([eE][+-]?\d+)?")
    word_regex = re.compile(r"[A-Za-z_]\w*")

    def __init__(self, expression):
        self.expression = expression
        self.tokens = []
        self.index = 0

    def tokenize(self):
        while self.index < len(self.expression):
            char = self.expression[self.index]
            if char.isspace():
                self.index += 1
            elif char in "'\"":
                self.read_string(char)
            elif self.number_regex.match(self.expression, self.index):
                self.read_number()
            elif self.word_regex.match(self.expression, self.index):
                self.read_word()
            else:
                self.read_operator()
        self.tokens.append(Token("eof", "", self.index))
        return self.tokens

    def read_string(self, quote):
        start_index = self.index
        self.index += 1
        chars = []
        while self.index < len(self.expression):
            char = self.expression[self.index]
            if char == "\\" and self.index + 1 < len(self.expression):
                chars.append(self.expression[self.index + 1])
                self.index += 2
            elif char == quote:
                self.index += 1
                text = self.expression[start_index:self.index]
                self.tokens.append(Token("string", text, start_index, "".join(chars)))
                return
            else:
                chars.append(char)
                self.index += 1
        raise ParseError("unclosed string literal", self.expression)

    def read_number(self):
        match = self.number_regex.match(self.expression, self.index)
        text = match.group(0)
        value = float(text) if match.group(2) or match.group(3) or text.startswith(".") else int(text)
        self.tokens.append(Token("number", text, self.index, value))
        self.index = match.end()

    def read_word(self):
        match = self.word_regex.match(self.expression, self.index)
        word = match.group(0).lower()
        if word in self.keywords:
            self.tokens.append(Token("keyword", word, self.index, self.keywords[word]))
        elif word in ("and", "or"):
            self.tokens.append(Token("operator", word, self.index))
        else:
            raise ParseError(f"unexpected identifier '{match.group(0)}'", self.expression)
        self.index = match.end()

    def read_operator(self):
        for operator in self.operators:
            if self.expression.startswith(operator, self.index):
                self.tokens.append(Token("operator", operator, self.index))
                self.index += len(operator)
                return
        raise ParseError(f"unexpected character '{self.expression[self.index]}'", self.expression)


# Loose comparison with PHP 8 semantics. Returns -1, 0 or 1.
def compare(left, right):
    if isinstance(left, str) and isinstance(right, str):
        if is_numeric(left) and is_numeric(right):
            left, right = to_number(left), to_number(right)
    elif left is None and isinstance(right, str):
        left = ""
    elif right is None and isinstance(left, str):
        right = ""
    elif isinstance(left, bool) or isinstance(right, bool) or left is None or right is None:
        left, right = truthy(left), truthy(right)
    elif isinstance(left, str):
        if is_numeric(left):
            left = to_number(left)
        else:
            right = format_number(right)
    elif isinstance(right, str):
        if is_numeric(right):
            right = to_number(right)
        else:
            left = format_number(left)
    return (left > right) - (left < right)


def strict_equals(left, right):
    return type(left) is type(right) and left == right


# Expression nodes. A compiled condition is a tree of these; calling
# `.evaluate()` on the root gives the condition's value.
class Literal:

    def __init__(self, value):
        self.value = value

    def evaluate(self):
        return self.value


class Negation:

    def __init__(self, operand):
        self.operand = operand

    def evaluate(self):
        return not truthy(self.operand.evaluate())


class Logical:

    def __init__(self, operator, left, right):
        self.operator = operator
        self.left = left
        self.right = right

    def evaluate(self):
        left = truthy(self.left.evaluate())
        if self.operator in ("or", "||"):
            return left or truthy(self.right.evaluate())
        return left and truthy(self.right.evaluate())


class Comparison:

    def __init__(self, operator, left, right):
        self.operator = operator
        self.left = left
        self.right = right

    def evaluate(self):
        left = self.left.evaluate()
        right = self.right.evaluate()
        if self.operator == "===":
            return strict_equals(left, right)
        if self.operator == "!==":
            return not strict_equals(left, right)
        result = compare(left, right)
        if self.operator == "==":
            return result == 0
        if self.operator in ("!=", "<>"):
            return result != 0
        if self.operator == "<":
            return result < 0
        if self.operator == ">":
            return result > 0
        if self.operator == "<=":
            return result <= 0
        return result >= 0


# The ExpressionParser turns a compiled conditional expression into a tree of
# expression nodes by recursive descent. Precedence follows PHP, lowest first:
#
#   or, and, ||, &&, equality, relational, unary !
#
class ExpressionParser:

    def __init__(self, expression):
        self.expression = expression
        self.tokens = ExpressionLexer(expression).tokenize()
        self.index = 0

    def parse(self):
        if self.current().type == "eof":
            raise ParseError("empty condition", self.expression)
        node = self.parse_or_word()
        if self.current().type != "eof":
            raise ParseError(f"unexpected '{self.current().text}'", self.expression)
        return node

    def current(self):
        return self.tokens[self.index]

    def accept(self, *operators):
        token = self.current()
        if token.type == "operator" and token.text in operators:
            self.index += 1
            return token.text
        return None

    def parse_binary(self, operators, operand, node_class):
        left = operand()
        while (operator := self.accept(*operators)):
            left = node_class(operator, left, operand())
        return left

    def parse_or_word(self):
        return self.parse_binary(("or",), self.parse_and_word, Logical)

    def parse_and_word(self):
        return self.parse_binary(("and",), self.parse_or_symbol, Logical)

    def parse_or_symbol(self):
        return self.parse_binary(("||",), self.parse_and_symbol, Logical)

    def parse_and_symbol(self):
        return self.parse_binary(("&&",), self.parse_equality, Logical)

    def parse_equality(self):
        return self.parse_binary(("===", "!==", "==", "!=", "<>"), self.parse_relation, Comparison)

    def parse_relation(self):
        return self.parse_binary(("<=", ">=", "<", ">"), self.parse_unary, Comparison)

    def parse_unary(self):
        if self.accept("!"):
            return Negation(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self):
        if self.accept("("):
            node = self.parse_or_word()
            if not self.accept(")"):
                raise ParseError("expected ')'", self.expression)
            return node
        if self.accept("-"):
            token = self.current()
            if token.type != "number":
                raise ParseError("expected a number after '-'", self.expression)
            self.index += 1
            return Literal(-token.value)
        token = self.current()
        if token.type in ("string", "number", "keyword"):
            self.index += 1
            return Literal(token.value)
        if token.type == "eof":
            raise ParseError("unexpected end of condition", self.expression)
        raise ParseError(f"unexpected '{token.text}'", self.expression)


# Conditional tags are resolved into a tree of Nodes before rendering, one
# IfNode per `if ... endif` pair. Branch flags are computed up front, in
# document order, so rendering only has to pick a branch.
class Node:

    def __init__(self):
        self.children = []

    def render(self):
        return "".join(child.render() for child in self.children)

    def process_children(self):
        pass


# TextNodes represent template text between conditional tags.
class TextNode(Node):

    def __init__(self, text):
        super().__init__()
        self.text = text

    def render(self):
        return self.text


# IfNodes implement conditional branching. ElseIfNodes and ElseNodes act as
# placeholders that split an IfNode's children into branches.
class IfNode(Node):

    def __init__(self, flag):
        super().__init__()
        self.flag = flag
        self.branches = []

    def process_children(self):
        self.branches = [(self.flag, Node())]
        seen_else = False
        for child in self.children:
            if isinstance(child, (ElseIfNode, ElseNode)):
                if seen_else:
                    raise ParseError(f"unexpected {child.keyword} after else")
                seen_else = isinstance(child, ElseNode)
                self.branches.append((child.flag, Node()))
            else:
                self.branches[-1][1].children.append(child)

    def render(self):
        for flag, branch in self.branches:
            if flag:
                return branch.render()
        return ""


class ElseIfNode(Node):

    def __init__(self, keyword, flag):
        super().__init__()
        self.keyword = keyword
        self.flag = flag


class ElseNode(ElseIfNode):

    def __init__(self):
        super().__init__("else", True)


# A ParseSession carries the state shared by one top-level `parse()` call and
# all the nested parses it triggers: the root context, the extraction store,
# the in-condition flag and the recursion depth.
class ParseSession:

    string_regex = re.compile(r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"", re.S)
    not_regex = re.compile(r"(?<![\w.])not(?![\w.])")
    param_regex = re.compile(r"""([\w.:-]+)\s*=\s*(?:(["'])(.*?)(?<!\\)\2|([^\s"'=]+))""", re.S)
    unescape_regex = re.compile(r"\\(.)", re.S)
    keywords = {"true", "false", "null", "and", "or"}

    def __init__(self, parser, allow_raw_code=False):
        self.parser = parser
        self.allow_raw_code = allow_raw_code
        self.store = ExtractionStore()
        self.root = None
        self.callback_data = None
        self.in_condition = False
        self.blank_unresolved = False
        self.depth = 0

    @property
    def glue(self):
        return self.parser.scope_glue()

    @contextmanager
    def descend(self):
        if self.depth >= self.parser.max_depth:
            raise RecursionLimitError(f"recursive expansion nested deeper than {self.parser.max_depth} levels")
        self.depth += 1
        try:
            yield self
        finally:
            self.depth -= 1

    # The first call establishes the root context. Later calls come from
    # recursive expansion and see the root merged under their own data.
    # Without a callback, tags the variable pass can't resolve render as "".
    def parse(self, text, data=None, callback=None):
        data = normalize(data)
        if self.root is None:
            self.root = data
            self.blank_unresolved = callback is None
            return self.finish(self.render(text, data, callback))
        previous = self.callback_data
        self.callback_data = data = merge(self.root, data)
        try:
            return self.finish(self.render(text, data, callback))
        finally:
            self.callback_data = previous

    def render(self, text, data, callback):
        if not self.allow_raw_code:
            text = text.replace("<?", "&lt;?").replace("?>", "?&gt;")

        text = self.parser.parse_comments(text)
        text = self.extract_noparse(text)
        text = self.extract_looped_tags(text)

        # Conditionals go first so that untaken branches are never parsed.
        text = self.parse_conditionals(text, data, callback)
        text = self.store.inject(text, "looped_tags")
        text = self.parse_variables(text, data, callback)
        text = self.store.inject(text, "callback_blocks")

        if callback is not None:
            text = self.parse_callback_tags(text, data, callback)
        return text

    def finish(self, text):
        if self.parser.is_cumulative():
            self.parser.noparse.take(self.store, "noparse")
        return self.store.inject(text)

    def extract_noparse(self, text):
        for match in self.parser.noparse_regex.finditer(text):
            text = self.store.extract("noparse", match.group(0), match.group(1), text)
        return text

    # Returns the next tag at or after `position`, matched up with its close
    # tag, or None when there are no more tags.
    def find_tag(self, text, position=0):
        match = self.parser.tag_regex.search(text, position)
        if match is None:
            return None
        name, parameters, slash = match.groups()
        tag = Tag(name, match.start(), match.end(), parameters or "", slash is not None)
        return BlockMatcher(name).match(text, tag)

    def splice(self, text, tag, replacement):
        return text[:tag.start] + replacement + text[tag.end:]

    # Hides every block tag so that the conditional pass can't see inside
    # loops or callback blocks. Blocks with parameters belong to the callback.
    def extract_looped_tags(self, text):
        position = 0
        while (tag := self.find_tag(text, position)):
            if not tag.terminated:
                position = tag.end
                continue
            category = "callback_blocks" if self.param_regex.search(tag.parameters) else "looped_tags"
            placeholder = self.store.stash(category, text[tag.start:tag.end])
            text = self.splice(text, tag, placeholder)
            position = tag.start + len(placeholder)
        return text

    def parse_conditionals(self, text, data, callback=None):
        matches = list(self.parser.conditional_regex.finditer(text))
        if not matches:
            return text

        stack = [Node()]
        position = 0

        for match in matches:
            stack[-1].children.append(TextNode(text[position:match.start()]))
            position = match.end()
            keyword, expression, is_else, is_endif = match.groups()
            if keyword:
                flag = self.evaluate_condition(expression.strip(), data, callback)
                if keyword.endswith("unless"):
                    flag = not flag
                if keyword.startswith("else"):
                    if len(stack) == 1:
                        raise ParseError(f"unexpected {keyword}", match.group(0))
                    stack[-1].children.append(ElseIfNode(keyword, flag))
                else:
                    node = IfNode(flag)
                    stack[-1].children.append(node)
                    stack.append(node)
            elif is_else:
                if len(stack) == 1:
                    raise ParseError("unexpected else", match.group(0))
                stack[-1].children.append(ElseNode())
            else:
                if len(stack) == 1:
                    raise ParseError("unexpected endif", match.group(0))
                stack.pop().process_children()

        if len(stack) > 1:
            raise ParseError("expecting endif", text[matches[0].start():])

        stack[-1].children.append(TextNode(text[position:]))
        return stack.pop().render()

    def evaluate_condition(self, expression, data, callback=None):
        compiled = self.compile_condition(expression, data, callback)
        try:
            result = ExpressionParser(compiled).parse().evaluate()
        except ParseError as error:
            raise ParseError(error.reason, expression) from error
        logger.debug("condition %r compiled to %r: %r", expression, compiled, result)
        return truthy(result)

    # Rewrites a condition until it contains nothing but literals, operators
    # and parentheses.
    def compile_condition(self, expression, data, callback=None):
        parser = self.parser
        stash = self.store.stash

        condition = self.string_regex.sub(lambda m: stash("__cond_str", m.group(0)), expression)
        condition = self.not_regex.sub("!", condition)

        def exists(match):
            found = resolve(match.group(1), data, MISSING, self.glue) is not MISSING
            return stash("__cond_exists", "true" if found else "false")

        condition = parser.exists_regex.sub(exists, condition)

        # Unresolved names survive the first sweep; dotted ones may be
        # callback tags.
        previous = self.in_condition
        self.in_condition = True
        try:
            condition = parser.identifier_regex.sub(lambda m: self.condition_var(m, data, True), condition)
            if callback is not None:
                condition = parser.callback_ref_regex.sub(wrap_callback_ref, condition)
                condition = self.parse_callback_tags(condition, data, callback)
        finally:
            self.in_condition = previous

        condition = parser.identifier_regex.sub(lambda m: self.condition_var(m, data, False), condition)
        condition = self.store.inject(condition, "__cond_str")
        return self.store.inject(condition, "__cond_exists")

    def condition_var(self, match, data, keep_unresolved):
        name = match.group(1)
        if name is None:
            return match.group(0)
        if is_numeric(name) or name.startswith("__cond_") or name.lower() in self.keywords:
            return name
        value = resolve(name, data, MISSING, self.glue)
        if value is MISSING:
            return name if keep_unresolved else "null"
        literal = to_literal(value)
        if literal.startswith("'"):
            return self.store.stash("__cond_str", literal)
        return literal

    def parse_variables(self, text, data, callback=None):
        position = 0
        while (tag := self.find_tag(text, position)):
            if not tag.terminated or tag.parameters.strip():
                position = tag.end
                continue
            value = resolve(tag.name, data, MISSING, self.glue)
            if value is MISSING and self.blanks(callback):
                replacement = ""
            elif value is MISSING:
                logger.debug("deferring unresolved block %r to the callback", tag.name)
                replacement = self.store.stash("callback_blocks", text[tag.start:tag.end])
            else:
                replacement = self.store.stash("loop_output", self.expand_loop(tag, value, data, callback))
            text = self.splice(text, tag, replacement)
            position = tag.start + len(replacement)

        blank = self.blanks(callback)

        def substitute(match):
            value = resolve(match.group(1), data, MISSING, self.glue)
            if value is MISSING:
                return "" if blank else match.group(0)
            return to_string(value)

        text = self.parser.variable_regex.sub(substitute, text)
        return self.store.inject(text, "loop_output")

    def blanks(self, callback):
        return self.blank_unresolved and callback is None

    def expand_loop(self, tag, value, data, callback=None):
        items = iterate(value)
        logger.debug("expanding %r over %d item(s)", tag.name, len(items))
        output = []
        for item in items:
            context = merge(data, item)
            chunk = self.extract_looped_tags(tag.content)
            chunk = self.parse_conditionals(chunk, context, callback)
            chunk = self.store.inject(chunk, "looped_tags")
            chunk = self.parse_variables(chunk, context, callback)
            chunk = self.store.inject(chunk, "callback_blocks")
            if callback is not None:
                chunk = self.parse_callback_tags(chunk, context, callback)
            output.append(chunk)
        return "".join(output)

    # Sends every remaining tag to the callback, left to right. Scanning
    # restarts at each replacement, so tags the callback returns are dispatched
    # too. `regions` holds the end offsets of the replacements the scan is
    # currently inside, innermost last, and bounds how deeply they can nest.
    def parse_callback_tags(self, text, data, callback):
        in_condition = self.in_condition
        regex = self.parser.callback_ref_tag_regex if in_condition else self.parser.tag_regex
        if self.callback_data:
            data = merge(self.callback_data, data)

        regions = []
        position = 0
        while (match := regex.search(text, position)):
            name = match.group(1)
            self_closing = not in_condition and match.group(3) is not None
            tag = Tag(name, match.start(), match.end(), match.group(2) or "", self_closing)

            while regions and regions[-1] <= tag.start:
                regions.pop()
            if len(regions) >= self.parser.max_depth:
                raise RecursionLimitError(f"callback output for {name!r} nested deeper than {self.parser.max_depth} levels")

            parameters = {}
            if tag.parameters.strip():
                raw_parameters = self.store.inject(tag.parameters, "__cond_str")
                parameters = self.parse_parameters(raw_parameters, data, callback)

            if not in_condition:
                tag = BlockMatcher(name).match(text, tag)

            replacement = self.dispatch(callback, name, parameters, tag.content, data)
            if in_condition:
                replacement = self.store.stash("__cond_str", to_literal(replacement))

            text = self.splice(text, tag, replacement)
            end = tag.start + len(replacement)
            shift = end - tag.end
            regions = [max(region + shift, end) for region in regions]
            regions.append(end)
            position = tag.start

        return text

    def parse_parameters(self, parameters, data, callback=None):
        result = {}
        for key, quote, quoted, bare in self.param_regex.findall(parameters):
            if quote:
                result[key] = self.unescape_regex.sub(r"\1", quoted)
            else:
                result[key] = self.parameter_value(bare, data, callback)
        return result

    def parameter_value(self, text, data, callback=None):
        value = resolve(text, data, MISSING, self.glue)
        if value is not MISSING:
            return to_string(value)
        if callback is not None and not is_numeric(text) and self.parser.callback_name_regex.fullmatch(text):
            return self.dispatch(callback, text, {}, "", data)
        return text

    def dispatch(self, callback, name, parameters, content, data):
        logger.debug("dispatching %r with %r", name, parameters)
        replacement = callback(name, parameters, content)
        replacement = "" if replacement is None else to_string(replacement)
        return self.parse_recursives(replacement, content, callback, data)

    # Expands the first `{{ *recursive key* }}` marker in `text` once per
    # child found under `key`, re-parsing the block content for each child.
    # Each sibling's output ends with a token derived from its own output that
    # the next sibling replaces, which keeps siblings in order.
    def parse_recursives(self, text, content, callback, data):
        match = self.parser.recursive_regex.search(text)
        if match is None:
            return text

        tag, key = match.group(0), match.group(1)
        children = resolve(key, data, MISSING, self.glue)
        if not is_collection(children) or not children:
            return text.replace(tag, "", 1)

        # A single child arrives as a flat collection of scalars.
        if not any(is_collection(child) for child in iterate(children)):
            children = [children]
        else:
            children = iterate(children)

        logger.debug("expanding recursive %r over %d child(ren)", key, len(children))
        next_tag = None
        with self.descend():
            for count, child in enumerate(children, 1):
                child = to_array(child)
                has_children = key in child
                if not has_children:
                    child[key] = []

                replacement = self.parse(content, child, callback)
                if not has_children:
                    replacement = self.parser.recursive_regex.sub("", replacement)

                current_tag = tag if next_tag is None else next_tag
                if count == len(children):
                    next_tag = ""
                else:
                    next_tag = hashlib.md5((tag + replacement).encode("utf-8")).hexdigest()
                text = text.replace(current_tag, replacement + next_tag, 1)

                if has_children:
                    text = self.parse_recursives(text, content, callback, child)

        return text


def normalize(data):
    if isinstance(data, Mapping):
        return data
    return to_array(data)


def wrap_callback_ref(match):
    name = match.group(1)
    if name is None or is_numeric(name):
        return match.group(0)
    return "{" + name + "}"


# The Parser is the engine's public interface. It only holds configuration;
# every call to `parse()` runs in a fresh ParseSession, so parses never share
# state apart from the cumulative noparse store.
class Parser:

    comment_regex = re.compile(r"{{#.*?#}}", re.S)
    noparse_regex = re.compile(r"{{\s*noparse\s*}}(.*?){{\s*/noparse\s*}}", re.S)
    conditional_regex = re.compile(
        r"{{\s*(?:(if|unless|elseif|elseunless)(?=[\s(])(.*?)|(else)|(endif))\s*}}", re.S
    )

    def __init__(self, scope_glue=".", cumulative_noparse=False, max_depth=64):
        self._scope_glue = scope_glue
        self._cumulative_noparse = cumulative_noparse
        self.max_depth = max_depth
        self.noparse = ExtractionStore()
        self.setup_regex()

    def setup_regex(self):
        glue = re.escape(self._scope_glue)
        chars = "a-zA-Z0-9_" + (glue if self._scope_glue == "." else r"\." + glue)
        name = f"[{chars}]+"
        word = f"(?<![{chars}])({name})(?![{chars}])"

        self.variable_regex = re.compile(r"{{\s*(" + name + r")\s*}}")
        self.tag_regex = re.compile(r"{{\s*(" + name + r")(\s+[^}]*?)?\s*(/)?}}")
        self.callback_name_regex = re.compile(name + glue + name)
        self.callback_ref_regex = re.compile(r"\{[^{}]*\}|(?<![" + chars + r"])(" + name + glue + name + r")(?![" + chars + r"])")
        self.callback_ref_tag_regex = re.compile(r"{\s*(" + name + r")(\s+[^}]*?)?\s*}")
        self.identifier_regex = re.compile(r"\{[^{}]*\}|" + word)
        self.exists_regex = re.compile(r"(?<![\w.])exists\s+(" + name + r")")
        self.recursive_regex = re.compile(r"{{\s*\*recursive\s*(" + name + r")\*\s*}}")

    def scope_glue(self, glue=None):
        if glue is not None:
            self._scope_glue = glue
            self.setup_regex()
        return self._scope_glue

    def cumulative_noparse(self, enabled):
        self._cumulative_noparse = enabled

    def is_cumulative(self):
        return self._cumulative_noparse

    def parse(self, text, data=None, callback=None, allow_raw_code=False):
        return ParseSession(self, allow_raw_code).parse(text, data, callback)

    def parse_comments(self, text):
        return self.comment_regex.sub("", text)

    def parse_variables(self, text, data=None, callback=None):
        session = ParseSession(self)
        return session.store.inject(session.parse_variables(text, normalize(data), callback))

    def parse_conditionals(self, text, data=None, callback=None):
        session = ParseSession(self)
        return session.store.inject(session.parse_conditionals(text, normalize(data), callback))

    def parse_callback_tags(self, text, data, callback):
        session = ParseSession(self)
        return session.store.inject(session.parse_callback_tags(text, normalize(data), callback))

    # With cumulative noparse on, noparse regions stay hidden across parse
    # calls. Call this once on the final output to put them back.
    def inject_noparse(self, text):
        return self.noparse.inject(text, "noparse")
