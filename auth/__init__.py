"""auth/ -- Credentials, tokens, role hierarchy, verification, and account mutations for Keyward.

Layer rule: auth/ imports stdlib, third-party libraries, core/, and notify/.
core/ and notify/ never import from auth/.
"""
