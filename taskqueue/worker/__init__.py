"""
Worker module.
Contains the processing tick, processors and their collaborators.
"""
