#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Api

HTTP接口
"""
