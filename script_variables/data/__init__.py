#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Data

持久化网关与作用域锁
"""
