"""Navigator Keychain Meta information.
   Navigator Keychain is a personal password vault with per-user master keys.
"""
__title__ = 'navigator_keychain'
__description__ = (
   'Navigator Keychain stores per-site credentials encrypted '
   'under a master key derived from the login password.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-keychain'
