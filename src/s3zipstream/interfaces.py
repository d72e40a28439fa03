from zope.interface import Interface


class IObjectLister(Interface):
    """Enumerates the objects of a bucket."""

    def list_all(query):
        """Yield an ObjectDescriptor per object matching the query, paging lazily."""


class IObjectFetcher(Interface):
    """Opens the content of a single remote object."""

    def open(descriptor):
        """Context manager yielding a readable byte stream for the object.

        The underlying transfer resource is released when the block exits.
        """


class IZipWriter(Interface):
    """Incremental zip encoder writing to an output sink."""

    def begin_entry(name, modified=None):
        """Write the local file header of a new streamed entry."""

    def write_chunk(data):
        """Append bytes to the open entry and forward them to the sink."""

    def end_entry():
        """Close the open entry and write its data descriptor."""

    def finish():
        """Write the central directory and end records. Terminal."""


class IArchiveStreamer(Interface):
    """Streams a bucket listing into a single zip archive."""

    def stream(query, sink, cancel_event=None):
        """Write the archive for the query to sink."""

    def iter_archive(query, cancel_event=None):
        """Yield the archive for the query as byte chunks."""
