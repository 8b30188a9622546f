"""AST-based conversion of V8 ranges to Istanbul coverage."""
