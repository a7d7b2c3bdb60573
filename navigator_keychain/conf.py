"""Session key names shared by the vault session and its callers."""
import os

SESSION_ID = os.environ.get('KEYCHAIN_SESSION_ID', 'session_id')
SESSION_KEY = os.environ.get('KEYCHAIN_SESSION_KEY', 'user_id')
SESSION_USER = 'user'
SESSION_TIMEOUT = int(os.environ.get('KEYCHAIN_SESSION_TIMEOUT', 3600))

LOGGER_NAME = 'navigator.keychain'
