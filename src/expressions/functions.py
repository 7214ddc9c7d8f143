"""Whitelisted methods and global functions.

Both the CEL compiler and the direct evaluator accept exactly the names
listed here. Anything else is rejected.
"""

from common import CompileError

# author method name -> CEL method name
STRING_METHODS = {
    'includes': 'contains',
    'contains': 'contains',
    'startsWith': 'startsWith',
    'endsWith': 'endsWith',
    'toLowerCase': 'lowerAscii',
    'lowerAscii': 'lowerAscii',
    'toUpperCase': 'upperAscii',
    'upperAscii': 'upperAscii',
    'trim': 'trim',
    'substring': 'substring',
    'slice': 'substring',
    'split': 'split',
    'join': 'join',
    'indexOf': 'indexOf',
    'lastIndexOf': 'lastIndexOf',
    'replace': 'replace',
    'matches': 'matches',
    'size': 'size',
}

# author method name -> CEL macro; all take a single-parameter lambda
PREDICATE_METHODS = {
    'some': 'exists',
    'exists': 'exists',
    'every': 'all',
    'all': 'all',
    'exists_one': 'exists_one',
    'filter': 'filter',
    'map': 'map',
    'find': 'find',
    'flatMap': 'flatMap',
}

GLOBAL_FUNCTIONS = {
    'size': 'size',
    'has': 'has',
    'string': 'string',
    'String': 'string',
    'int': 'int',
    'parseInt': 'int',
    'double': 'double',
    'Number': 'double',
    'parseFloat': 'double',
    'bool': 'bool',
    'Boolean': 'bool',
}

MATH_FUNCTIONS = frozenset({
    'Math.min', 'Math.max', 'Math.abs', 'Math.floor', 'Math.ceil', 'Math.round',
})

METHOD_RESULT_TYPES = {
    'contains': 'bool',
    'startsWith': 'bool',
    'endsWith': 'bool',
    'matches': 'bool',
    'lowerAscii': 'string',
    'upperAscii': 'string',
    'trim': 'string',
    'substring': 'string',
    'replace': 'string',
    'join': 'string',
    'split': 'list',
    'indexOf': 'int',
    'lastIndexOf': 'int',
    'size': 'int',
    'exists': 'bool',
    'all': 'bool',
    'exists_one': 'bool',
    'filter': 'list',
    'map': 'list',
    'flatMap': 'list',
    'find': 'dyn',
}

FUNCTION_RESULT_TYPES = {
    'size': 'int',
    'has': 'bool',
    'string': 'string',
    'int': 'int',
    'double': 'double',
    'bool': 'bool',
    'Math.floor': 'int',
    'Math.ceil': 'int',
    'Math.round': 'int',
}


def normalize_method(name: str) -> str:
    """Map an author method name to its canonical (CEL) name.

    Raises:
        CompileError: If the method is not whitelisted
    """
    if name in STRING_METHODS:
        return STRING_METHODS[name]
    if name in PREDICATE_METHODS:
        return PREDICATE_METHODS[name]
    raise CompileError(f"Unsupported method call: {name}")


def normalize_function(name: str) -> str:
    """Map an author function name to its canonical name.

    Raises:
        CompileError: If the function is not whitelisted
    """
    if name in GLOBAL_FUNCTIONS:
        return GLOBAL_FUNCTIONS[name]
    if name in MATH_FUNCTIONS:
        return name
    raise CompileError(f"Unsupported function call: {name}")
