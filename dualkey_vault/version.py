"""DualKey Vault Meta information.
   DualKey Vault keeps labelled credentials in per-account vaults,
   encrypted with a key derived from two independent secrets.
"""
__title__ = 'dualkey_vault'
__description__ = (
   'Client-resident credential vault encrypted with a key derived '
   'from two independent secrets.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
