"""
Core Package.

Contains the expansion pipeline:
- Tokenizer and extended syntax parser
- Escape scanner and lowering engine
- Fresh-name allocation
- Host checking and the expansion engine
"""
