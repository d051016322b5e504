from .auth import User, SessionToken
from .catalog import Item
from .settings import FeeSettings
from .pos import PosSession
from .transactions import Transaction, TransactionDetail

__all__ = [
    'User', 'SessionToken',
    'Item',
    'FeeSettings',
    'PosSession',
    'Transaction', 'TransactionDetail',
]
