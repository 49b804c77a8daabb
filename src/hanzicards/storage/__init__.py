"""Persistence: card/collection records and the shared media cache."""
