"""SecuryFlex Keys Meta information.
   SecuryFlex Keys derives, caches and rotates the symmetric keys
   used to protect documents and signed payloads.
"""
__title__ = 'securyflex_keys'
__description__ = (
   'SecuryFlex Keys derives, caches and rotates the symmetric keys '
   'used to protect documents and signed payloads.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 SecuryFlex'
__author__ = 'SecuryFlex Security Team'
__author_email__ = 'security@securyflex.nl'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/securyflex/securyflex-keys'
