"""Professionals domain - live location, availability and proximity search"""
