"""Bookings domain - state machine, persistence and dispatch coordination"""
