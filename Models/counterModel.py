from mongoengine import Document, StringField, IntField


class Counter(Document):
    """Named monotonically increasing sequence."""
    name = StringField(primary_key=True)
    seq = IntField(default=0)

    meta = {'collection': 'counters'}

    @classmethod
    def next_value(cls, name: str) -> int:
        # Single find-and-modify so concurrent callers never share a value
        counter = cls.objects(name=name).modify(upsert=True, new=True, inc__seq=1)
        return counter.seq
