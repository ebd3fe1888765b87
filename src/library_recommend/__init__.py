"""
library-recommend: AI reading recommendations for library patrons.

Turns a patron's free-text reading request into catalog search terms,
retrieves matching media and streams a personalized summary back to the
client as Server-Sent Events.
"""

__version__ = "0.1.0"
