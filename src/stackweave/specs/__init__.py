"""Stack file parsing."""

from stackweave.specs.parser import (
    ResourceDeclaration,
    StackDocument,
    load_stack_document,
    parse_stack,
)

__all__ = ["ResourceDeclaration", "StackDocument", "load_stack_document", "parse_stack"]
