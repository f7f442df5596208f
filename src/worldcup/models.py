import uuid


class Item:
    def __init__(self, id, title, metadata=None):
        self.id = str(id)
        self.title = title
        self.metadata = dict(metadata) if metadata else {}

    @classmethod
    def from_dict(cls, data):
        """Build an item from an items-source record; unknown keys go to metadata."""
        metadata = {k: v for k, v in data.items() if k not in ('id', 'title', 'metadata')}
        metadata.update(data.get('metadata') or {})
        return cls(id=data['id'], title=data.get('title', ''), metadata=metadata)

    def to_dict(self):
        return {'id': self.id, 'title': self.title, 'metadata': dict(self.metadata)}

    def __eq__(self, other):
        if not isinstance(other, Item):
            return NotImplemented
        return (self.id, self.title, self.metadata) == (other.id, other.title, other.metadata)

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"Item(id={self.id}, title={self.title})"


class VoteRecord:
    def __init__(self, winner_id, loser_id=None, vote_id=None):
        self.winner_id = winner_id
        self.loser_id = loser_id
        self.vote_id = vote_id or uuid.uuid4().hex  # Idempotency key for the collector

    @classmethod
    def from_dict(cls, data):
        return cls(
            winner_id=data['winnerId'],
            loser_id=data.get('loserId'),
            vote_id=data.get('voteId'),
        )

    def to_dict(self):
        """Wire form; loserId is omitted for byes."""
        payload = {'winnerId': self.winner_id, 'voteId': self.vote_id}
        if self.loser_id is not None:
            payload['loserId'] = self.loser_id
        return payload

    def __eq__(self, other):
        if not isinstance(other, VoteRecord):
            return NotImplemented
        return (self.winner_id, self.loser_id, self.vote_id) == (other.winner_id, other.loser_id, other.vote_id)

    def __repr__(self):
        return f"VoteRecord(winner_id={self.winner_id}, loser_id={self.loser_id})"
