"""Transactional block metadata with key/value and object indexes."""