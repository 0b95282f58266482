"""Remote service clients."""

from .catalog import ImageCatalog
from .ingestion import AssetIngestionClient
from .rest import RestClient
from .vote_store import InMemoryVoteStore, RestVoteStore, VoteStore
