__version__ = "0.4.0-dev"
__author__ = "Mike Perry"
__contact__ = "mikeperry-git@torproject.org"
__url__ = "https://github.com/mikeperry-tor/vanguards"
__license__ = "MIT"
