"""Service layer package."""

from wordsync.services.auth import AuthSession, SessionState, TokenCredentialProvider
from wordsync.services.migration import FormatMigrationLayer, StorageLayout
from wordsync.services.offline_queue import PendingOperationQueue
from wordsync.services.realtime import ChangeBus, InProcessTransport, RedisTransport
from wordsync.services.remote import HttpDocumentStore
from wordsync.services.retry import RetryExecutor
from wordsync.services.vocabulary import VocabularyService
