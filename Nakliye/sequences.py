class LiveSequence:
    """Re-iterable view over a queryset factory.

    Each iteration builds a fresh queryset, so a second pass reflects the
    current database state instead of the first pass's result cache.
    """

    def __init__(self, factory):
        self._factory = factory

    def queryset(self):
        return self._factory()

    def __iter__(self):
        return self.queryset().iterator()

    def __bool__(self):
        return self.queryset().exists()

    def count(self):
        return self.queryset().count()

    def __repr__(self):
        return f"<LiveSequence {self.queryset().model.__name__}>"
